"""Access control module.

Holds the durable whitelist, the cached gate deciding which users and
groups may archive, passphrase self-enrollment and administrator commands.
"""
