"""MedLove Reminder Service - medication reminders and adherence streaks.

This package provides the backend for the MedLove medication tracker: a REST
API for the front end, an MCP server for assistant agents, and a background
worker that emails medication reminders.

Features:
- Medication schedules with HH:MM times in a configured timezone
- Reminder sweep with per-occurrence deduplication
- Up to three follow-up emails, stopped as soon as the dose is taken
- Consecutive-day adherence streaks per medication
- SQLite/PostgreSQL storage through SQLAlchemy

Components:
- config: Application settings
- database / crud: SQLAlchemy models and CRUD operations
- schemas: Pydantic validation schemas and typed records
- store: Async store adapter used by the core
- matcher, ledger, escalation, streaks, notifier, scheduler: reminder core
- api_server: FastAPI REST API
- mcp_server: MCP server with tools for AI agents
- background_worker: asyncio loop driving the scheduler

Usage:
    python main.py              # API, MCP server and worker together
    python api_server.py
    python background_worker.py
"""

__version__ = "1.0.0"
__description__ = "Medication reminder service with email escalation and streaks"
