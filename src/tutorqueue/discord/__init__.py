"""Discord bot integration for TutorQueue.

The bot runs in-process with FastAPI, sharing the same event loop.
Slash commands and gateway events are thin adapters over the services
in ``tutorqueue.core``.

Optional: if DISCORD_BOT_TOKEN is not set, the app runs without Discord.
"""
