"""MCP Server for MedLove Reminder Service.

This module provides MCP tools so an assistant agent can check a user's
medications for today, mark doses taken and read adherence streaks.
Uses the same database and the same scheduler core as the REST API.

Transport Support:
- stdio: Standard input/output (local process communication)
- sse: Server-Sent Events over HTTP (network access)
"""

from mcp.server.fastmcp import FastMCP
from datetime import datetime, timezone
import os

import crud
import database
from config import settings
from errors import AlreadyTakenError, NotFoundError, ReminderServiceError
from matcher import local_date
from services import build_scheduler
from logger_config import setup_core_loggers, setup_logger

logger = setup_logger(__name__, 'mcp.log')
setup_core_loggers('mcp.log')

database.init_db(database.engine)
scheduler = build_scheduler(settings, database.SessionLocal)
logger.info("MCP Server initialized")

mcp = FastMCP(
    "MedLoveReminders",
    host=settings.MCP_HOST,
    port=settings.MCP_PORT
)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _format_times(times) -> str:
    return ", ".join(times) if times else "no times set"


@mcp.tool()
def list_medications(user_id: str) -> str:
    """List all medications for a user.

    Args:
        user_id: User ID

    Returns:
        Formatted list of medications or message if none found
    """
    db = database.SessionLocal()
    try:
        medications = crud.get_medications_by_user(db, user_id)
        if not medications:
            return "No medications found."

        result = [f"Found {len(medications)} medication(s):\n"]
        for m in medications:
            state = "active" if m.is_active else ("taken today" if m.taken_on_date else "paused")
            result.append(
                f"\n• {m.name} ({m.dosage})\n"
                f"  ID: {m.id}\n"
                f"  Times: {_format_times(m.times)}\n"
                f"  Status: {state}"
            )
        return "\n".join(result)
    finally:
        db.close()


@mcp.tool()
def todays_medications(user_id: str) -> str:
    """Show which of today's medications are still to be taken.

    Args:
        user_id: User ID

    Returns:
        Today's medications split into pending and taken
    """
    db = database.SessionLocal()
    try:
        today = local_date(_now(), scheduler.config.timezone)
        medications = crud.get_medications_by_user(db, user_id)
        pending = [m for m in medications if m.is_active]
        taken = [m for m in medications if m.taken_on_date == today]

        if not pending and not taken:
            return "No medications scheduled today."

        lines = [f"Medications for {today.isoformat()}:"]
        for m in pending:
            lines.append(f"  ⏰ {m.name} ({m.dosage}) at {_format_times(m.times)}  [ID: {m.id}]")
        for m in taken:
            lines.append(f"  ✓ {m.name} - taken")
        return "\n".join(lines)
    finally:
        db.close()


@mcp.tool()
async def mark_medication_taken(user_id: str, medication_id: str) -> str:
    """Mark today's dose of a medication as taken.

    Args:
        user_id: User ID
        medication_id: Medication UUID

    Returns:
        Confirmation with the updated streak, or an error message
    """
    try:
        streak = await scheduler.on_dose_taken(user_id, medication_id, _now())
    except AlreadyTakenError:
        return "✗ Medication already taken today."
    except NotFoundError:
        return "✗ Medication not found."
    except ReminderServiceError as e:
        return f"✗ Error marking medication as taken: {str(e)}"

    return (
        f"✓ Medication marked as taken!\n"
        f"Current streak: {streak.current_streak} day(s)\n"
        f"Longest streak: {streak.longest_streak} day(s)"
    )


@mcp.tool()
def get_streak(user_id: str, medication_id: str) -> str:
    """Get the adherence streak for a medication.

    Args:
        user_id: User ID
        medication_id: Medication UUID

    Returns:
        Current and longest streak, or error message
    """
    db = database.SessionLocal()
    try:
        medication = crud.get_medication(db, medication_id, user_id)
        if not medication:
            return "✗ Medication not found."

        streak = crud.get_streak(db, user_id, medication_id)
        if streak is None:
            return f"No doses of {medication.name} recorded yet."

        last = streak.last_taken.isoformat() if streak.last_taken else "never"
        return (
            f"Streak for {medication.name}:\n"
            f"  Current: {streak.current_streak} day(s)\n"
            f"  Longest: {streak.longest_streak} day(s)\n"
            f"  Last taken: {last}"
        )
    finally:
        db.close()


if __name__ == "__main__":
    transport = os.getenv("MCP_TRANSPORT", settings.MCP_TRANSPORT).lower()

    if transport == "sse":
        host = settings.MCP_HOST
        port = settings.MCP_PORT

        print(f"Starting MCP server with SSE transport on {host}:{port}")
        print(f"SSE endpoint: http://{host}:{port}/sse")

        mcp.run(transport="sse")
    else:
        print("Starting MCP server with stdio transport")
        mcp.run(transport="stdio")
