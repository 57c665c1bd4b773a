"""Whitelist gate for inbound events.

The gate keeps an in-memory copy of the durable whitelist and decides, per
event, whether the principal may trigger archival. It also owns the two
ways the whitelist changes at runtime:

- Passphrase self-enrollment: an unauthorized user or group sends the
  configured passphrase and is added permanently.
- Administrator commands (list / add / remove / remove-all-but-admin),
  accepted only from the configured administrator user id.

Writes are serialized by one lock and applied to the durable store first;
the cache only changes once the store accepted the write. A background task
reloads the cache periodically so edits made directly in the store are
picked up within ``refresh_interval_seconds``.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

from mediarelay.errors import NotifyFailure, WhitelistPersistFailure
from mediarelay.messaging.client import LineMessagingClient
from mediarelay.messaging.schemas import InboundEvent

from .schemas import AccessDecision, Principal, PrincipalKind, WhitelistEntry
from .store import WhitelistStore

logger = logging.getLogger(__name__)

# =============================================================================
# Reply texts
# =============================================================================

USER_ENROLLED_TEXT = "✅ 通關成功！已加入永久白名單。"
GROUP_ENROLLED_TEXT = "✅ 群組通關成功！已加入永久白名單。"
DENIED_TEXT = "⛔ 尚未授權，請先輸入通關密語。"
CLEARED_TEXT = "⚠️ 已清空白名單（保留管理者）"
PERSIST_FAILED_TEXT = "⚠️ 白名單儲存失敗，請稍後再試。"
ADMIN_PROTECTED_TEXT = "⛔ 無法移除管理者"
EMPTY_MARK = "(無)"

# =============================================================================
# Admin command grammar
# =============================================================================

LIST_COMMANDS = ("白名單列表", "/whitelist")
ADD_PREFIXES = ("加入 ", "/allow ")
REMOVE_PREFIXES = ("踢出 ", "/kick ")
REMOVE_ALL_TARGETS = ("全部", "all")


@dataclass(frozen=True)
class AdminCommand:
    """A parsed administrator command."""
    action: str  # list | add | remove | clear
    target: Optional[str] = None


def parse_admin_command(text: str) -> Optional[AdminCommand]:
    """Parse *text* as an admin command; None if it is not one."""
    text = text.strip()
    if text in LIST_COMMANDS:
        return AdminCommand("list")
    for prefix in ADD_PREFIXES:
        if text.startswith(prefix):
            target = text[len(prefix):].strip()
            return AdminCommand("add", target) if target else None
    for prefix in REMOVE_PREFIXES:
        if text.startswith(prefix):
            target = text[len(prefix):].strip()
            if not target:
                return None
            if target in REMOVE_ALL_TARGETS:
                return AdminCommand("clear")
            return AdminCommand("remove", target)
    return None


EntryKey = Tuple[str, str]


class AccessGate:
    """Decides whether an event's principal may trigger archival."""

    def __init__(
        self,
        store: WhitelistStore,
        notifier: LineMessagingClient,
        passphrase: str,
        admin_user_id: str = "",
        denial_policy: str = "silent",
        refresh_interval_seconds: int = 300,
    ) -> None:
        self._store = store
        self._notifier = notifier
        self.passphrase = passphrase.strip()
        self.admin_user_id = admin_user_id
        self.denial_policy = denial_policy
        self.refresh_interval_seconds = refresh_interval_seconds

        self._entries: Dict[EntryKey, WhitelistEntry] = {}
        self._lock = asyncio.Lock()
        self._refresh_task: Optional[asyncio.Task] = None  # type: ignore[type-arg]
        self._admin_stored = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def admin_principal(self) -> Optional[Principal]:
        return Principal.user(self.admin_user_id) if self.admin_user_id else None

    async def initialize(self) -> None:
        """Load the whitelist and seed the administrator if absent.

        An unreachable store does not stop startup: the gate begins with the
        administrator alone and the refresh loop keeps retrying the load.
        """
        async with self._lock:
            try:
                entries = await self._store.load()
            except WhitelistPersistFailure as e:
                logger.error("Whitelist unavailable at startup; admin-only until refresh: %s", e)
                self._replace_cache([])
                await self._ensure_admin(persist=False)
            else:
                self._replace_cache(entries)
                await self._ensure_admin(persist=True)
        logger.info("AccessGate initialized with %d entries", len(self._entries))

    async def _ensure_admin(self, persist: bool) -> None:
        """Keep the administrator in the cache; store it once if never stored."""
        admin = self.admin_principal
        if admin is None:
            return
        if self._has(admin):
            self._admin_stored = True
            return
        entry = WhitelistEntry(principal=admin, label="admin")
        if persist and not self._admin_stored:
            try:
                await self._store.append(entry)
                self._admin_stored = True
                logger.info("Seeded administrator %s into whitelist", self.admin_user_id)
            except WhitelistPersistFailure as e:
                logger.error("Could not store administrator %s: %s", self.admin_user_id, e)
        self._entries[entry.key] = entry

    async def start(self) -> None:
        """Start the periodic refresh task."""
        self._refresh_task = asyncio.create_task(self._refresh_loop())
        logger.info("Whitelist refresh task started (interval=%ss)", self.refresh_interval_seconds)

    async def stop(self) -> None:
        if self._refresh_task:
            self._refresh_task.cancel()
            try:
                await self._refresh_task
            except asyncio.CancelledError:
                pass
            self._refresh_task = None
        logger.info("Whitelist refresh task stopped")

    async def _refresh_loop(self) -> None:
        while True:
            await asyncio.sleep(self.refresh_interval_seconds)
            await self.refresh()

    async def refresh(self) -> None:
        """Reload the cache from the durable store; keeps the stale copy on error."""
        async with self._lock:
            try:
                entries = await self._store.load()
            except WhitelistPersistFailure as e:
                logger.warning("Whitelist refresh failed, keeping cached copy: %s", e)
                return
            self._replace_cache(entries)
            # Never lock the administrator out because of an external edit.
            await self._ensure_admin(persist=True)
        logger.debug("Whitelist refreshed (%d entries)", len(self._entries))

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def _replace_cache(self, entries: List[WhitelistEntry]) -> None:
        self._entries = {e.key: e for e in entries}

    def _has(self, principal: Principal) -> bool:
        return (principal.kind.value, principal.id) in self._entries

    def is_authorized(self, principal: Principal) -> bool:
        return self._has(principal)

    @property
    def entries(self) -> List[WhitelistEntry]:
        return list(self._entries.values())

    def is_admin(self, event: InboundEvent) -> bool:
        return bool(self.admin_user_id) and event.source.userId == self.admin_user_id

    # ------------------------------------------------------------------
    # Authorization
    # ------------------------------------------------------------------

    async def authorize(self, event: InboundEvent) -> AccessDecision:
        """Gate one event, handling admin commands and enrollment in place."""
        principal = event.principal
        if principal is None:
            return AccessDecision.DENIED

        text = event.text
        if text is not None and self.is_admin(event):
            command = parse_admin_command(text)
            if command is not None:
                await self.handle_admin_command(event, command)
                return AccessDecision.ADMIN_HANDLED

        if self.is_authorized(principal):
            return AccessDecision.ALLOWED

        if text is not None and text == self.passphrase:
            return await self.enroll(event, principal)

        if self.denial_policy == "explicit":
            await self._reply(event, DENIED_TEXT)
        if event.media_kind is not None:
            logger.info("Media from unauthorized %s %s ignored", principal.kind.value, principal.id)
            return AccessDecision.REQUIRES_ENROLLMENT
        return AccessDecision.DENIED

    async def enroll(self, event: InboundEvent, principal: Principal) -> AccessDecision:
        """Add *principal* after a correct passphrase and confirm."""
        label = await self._notifier.label_for(event)
        entry = WhitelistEntry(principal=principal, label=label)
        try:
            await self._mutate(lambda: self._store.append(entry), add=[entry])
        except WhitelistPersistFailure as e:
            logger.error("Enrollment of %s not persisted: %s", principal.id, e)
            await self._reply(event, PERSIST_FAILED_TEXT)
            return AccessDecision.DENIED
        logger.info("Enrolled %s %s (%s)", principal.kind.value, principal.id, label or "-")
        text = GROUP_ENROLLED_TEXT if principal.kind == PrincipalKind.GROUP else USER_ENROLLED_TEXT
        await self._reply(event, text)
        return AccessDecision.ENROLLED

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def _mutate(
        self,
        write: Callable[[], Awaitable[object]],
        add: Optional[List[WhitelistEntry]] = None,
        remove: Optional[List[EntryKey]] = None,
        replace: Optional[List[WhitelistEntry]] = None,
    ) -> None:
        """Apply *write* to the store (retrying once), then to the cache."""
        async with self._lock:
            try:
                await write()
            except WhitelistPersistFailure as e:
                logger.warning("Whitelist write failed, retrying once: %s", e)
                await write()
            if replace is not None:
                self._replace_cache(replace)
            for key in remove or []:
                self._entries.pop(key, None)
            for entry in add or []:
                self._entries[entry.key] = entry

    async def add(self, principal: Principal, label: Optional[str] = None) -> WhitelistEntry:
        entry = WhitelistEntry(principal=principal, label=label)
        await self._mutate(lambda: self._store.append(entry), add=[entry])
        return entry

    async def remove(self, principal: Principal) -> bool:
        """Remove *principal*; the administrator cannot be removed."""
        if principal == self.admin_principal:
            return False
        if not self._has(principal):
            return False
        await self._mutate(
            lambda: self._store.remove(principal),
            remove=[(principal.kind.value, principal.id)],
        )
        return True

    async def clear_all_but_admin(self) -> None:
        admin = self.admin_principal
        kept: List[WhitelistEntry] = []
        if admin is not None:
            kept.append(
                self._entries.get((admin.kind.value, admin.id))
                or WhitelistEntry(principal=admin, label="admin")
            )
        await self._mutate(lambda: self._store.save(kept), replace=kept)

    # ------------------------------------------------------------------
    # Admin commands
    # ------------------------------------------------------------------

    def render_list(self) -> str:
        def fmt(entry: WhitelistEntry) -> str:
            return f"{entry.principal.id} ({entry.label})" if entry.label else entry.principal.id

        users = [fmt(e) for e in self.entries if e.principal.kind == PrincipalKind.USER]
        groups = [fmt(e) for e in self.entries if e.principal.kind == PrincipalKind.GROUP]
        return (
            f"👤 使用者：\n{chr(10).join(users) or EMPTY_MARK}\n\n"
            f"👥 群組：\n{chr(10).join(groups) or EMPTY_MARK}"
        )

    async def handle_admin_command(self, event: InboundEvent, command: AdminCommand) -> None:
        logger.info("Admin command: %s %s", command.action, command.target or "")
        try:
            if command.action == "list":
                reply = self.render_list()
            elif command.action == "clear":
                await self.clear_all_but_admin()
                reply = CLEARED_TEXT
            elif command.action == "add":
                await self.add(Principal.from_target(command.target))
                reply = f"✅ 已加入白名單 {command.target}"
            else:
                target = Principal.from_target(command.target)
                if target == self.admin_principal:
                    reply = ADMIN_PROTECTED_TEXT
                elif await self.remove(target):
                    reply = f"✅ 已從白名單移除 {command.target}"
                else:
                    reply = f"ℹ️ 白名單中找不到 {command.target}"
        except WhitelistPersistFailure as e:
            logger.error("Admin command %s not persisted: %s", command.action, e)
            reply = PERSIST_FAILED_TEXT
        await self._reply(event, reply)

    async def _reply(self, event: InboundEvent, text: str) -> None:
        if not event.replyToken:
            return
        try:
            await self._notifier.reply_text(event.replyToken, text)
        except NotifyFailure as e:
            logger.warning("Reply to %s failed: %s", event.conversation_key, e)
