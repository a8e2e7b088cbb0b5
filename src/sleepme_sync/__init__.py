"""Rate-adaptive synchronization core for SleepMe devices."""

__version__ = "0.1.0"
