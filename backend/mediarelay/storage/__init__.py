"""Cloud storage module.

Google Drive and OneDrive backends behind one interface, plus race-safe
folder resolution, collision-free naming and multi-backend routing.
"""
