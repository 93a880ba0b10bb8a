"""Background workers for prospector.

Queue consumers (research, email), the cron task scheduler and the
actions it fires.  Each worker runs as its own asyncio task.
"""
