"""Current date/time tool."""

from datetime import UTC, datetime
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, Field

from sage.errors import ToolValidationError
from sage.tools.registry import ToolContext


class CurrentDatetimeArgs(BaseModel):
    timezone: str = Field(default="UTC", description="IANA timezone name, e.g. Europe/Berlin")


async def get_current_datetime(args: dict[str, Any], context: ToolContext) -> dict[str, Any]:
    del context
    name = str(args.get("timezone") or "UTC").strip() or "UTC"
    try:
        tz = UTC if name.upper() == "UTC" else ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ToolValidationError(f"invalid timezone: {name}") from exc
    now = datetime.now(tz)
    return {
        "timezone": name,
        "iso": now.isoformat(),
        "date": now.date().isoformat(),
        "weekday": now.strftime("%A"),
        "unix": int(now.timestamp()),
    }
