import io
import re

import pandas as pd

from database import Event, Registration
from registration import list_participants

COLUMNS = ["Name", "Username", "Email", "Phone", "Status", "Registered at", "Proof submitted", "Decided at"]


def _when(value) -> str:
    return value.strftime("%Y-%m-%d %H:%M") if value else "—"


def participants_dataframe(registrations: list[Registration]) -> pd.DataFrame:
    data = []
    for registration in registrations:
        user = registration.user
        data.append({
            "Name": registration.guest_name or user.full_name or "—",
            "Username": f"@{user.username}" if user.username else "—",
            "Email": registration.guest_email or user.email or "—",
            "Phone": registration.guest_phone or "—",
            "Status": registration.status,
            "Registered at": _when(registration.created_at),
            "Proof submitted": _when(registration.proof_submitted_at),
            "Decided at": _when(registration.decided_at),
        })
    return pd.DataFrame(data, columns=COLUMNS)


def export_filename(event: Event) -> str:
    slug = re.sub(r"[^A-Za-z0-9]+", "_", event.title).strip("_")[:20] or "event"
    return f"participants_{slug}_{event.id}.xlsx"


async def export_participants_xlsx(event_id: int, actor) -> tuple[str, bytes]:
    """Build the participant sheet of an event; raises if the actor may not see it."""
    event, registrations = await list_participants(event_id, actor)
    df = participants_dataframe(registrations)
    buffer = io.BytesIO()
    df.to_excel(buffer, index=False, sheet_name="Participants")
    return export_filename(event), buffer.getvalue()
