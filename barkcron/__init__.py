"""
barkcron - cron-driven Python script runner with Bark push notifications.
"""

__version__ = "1.0.0"
