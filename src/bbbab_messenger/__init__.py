"""BBBAB Messenger realtime chat synchronization core."""

__app_id__ = "bbbab-messenger"
__version__ = "0.1.0"
