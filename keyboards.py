from aiogram.utils.keyboard import ReplyKeyboardBuilder
from aiogram.types import KeyboardButton, InlineKeyboardButton, InlineKeyboardMarkup
from aiogram.utils.keyboard import InlineKeyboardBuilder

# Main menu
def get_main_menu_keyboard(is_admin: bool = False):
    builder = ReplyKeyboardBuilder()
    builder.row(
        KeyboardButton(text="📅 Events"),
        KeyboardButton(text="➕ Create event")
    )
    if is_admin:
        builder.row(KeyboardButton(text="🗂 Pending events"))
    builder.row(KeyboardButton(text="ℹ️ Help"))
    return builder.as_markup(resize_keyboard=True, one_time_keyboard=False)

# Inline list of events
def get_events_keyboard(events):
    builder = InlineKeyboardBuilder()
    for event in events:
        text = f"{event.title} ({event.starts_at:%d %b %H:%M})"
        builder.button(text=text, callback_data=f"view_event_{event.id}")
    builder.adjust(1)
    return builder.as_markup()

# Cancel button for the wizard forms
def get_cancel_keyboard():
    return InlineKeyboardMarkup(inline_keyboard=[
        [InlineKeyboardButton(text="❌ Cancel", callback_data="cancel_form")]
    ])

# Upload or skip an optional file (payment QR, poster)
def get_upload_keyboard(kind: str):
    builder = InlineKeyboardBuilder()
    builder.button(text="📤 Upload", callback_data=f"upload_{kind}")
    builder.button(text="⏭ Skip", callback_data=f"skip_{kind}")
    builder.button(text="❌ Cancel", callback_data="cancel_form")
    builder.adjust(2, 1)
    return builder.as_markup()

# Approve / reject a pending event
def get_event_review_keyboard(event_id: int):
    builder = InlineKeyboardBuilder()
    builder.button(text="✅ Approve", callback_data=f"approve_event_{event_id}")
    builder.button(text="❌ Reject", callback_data=f"reject_event_{event_id}")
    builder.adjust(2)
    return builder.as_markup()

# Buttons under a published announcement
def get_join_keyboard(event_id: int):
    builder = InlineKeyboardBuilder()
    builder.button(text="📝 Register", callback_data=f"join_event_{event_id}")
    builder.button(text="👥 Participants", callback_data=f"participants_{event_id}")
    builder.adjust(2)
    return builder.as_markup()

def get_closed_keyboard(event_id: int):
    builder = InlineKeyboardBuilder()
    builder.button(text="🔒 Registration closed", callback_data=f"event_closed_{event_id}")
    builder.button(text="👥 Participants", callback_data=f"participants_{event_id}")
    builder.adjust(2)
    return builder.as_markup()

def get_upload_proof_keyboard(event_id: int):
    return InlineKeyboardMarkup(inline_keyboard=[
        [InlineKeyboardButton(text="📤 Upload payment proof", callback_data=f"upload_proof_{event_id}")]
    ])

# Verify / reject an uploaded payment proof
def get_payment_review_keyboard(registration_id: int):
    builder = InlineKeyboardBuilder()
    builder.button(text="✅ Verify", callback_data=f"verify_payment_{registration_id}")
    builder.button(text="❌ Reject", callback_data=f"reject_payment_{registration_id}")
    builder.adjust(2)
    return builder.as_markup()

def get_guest_registration_keyboard(event_id: int):
    return InlineKeyboardMarkup(inline_keyboard=[
        [InlineKeyboardButton(text="📝 Register as guest", callback_data=f"guest_join_{event_id}")]
    ])
