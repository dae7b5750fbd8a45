"""Scheduling core: work store, dispatchers, admission, watchdog and broadcaster."""
