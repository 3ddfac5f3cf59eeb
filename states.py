from aiogram.fsm.state import State, StatesGroup

# Event creation wizard, one state per stage
class CreateEvent(StatesGroup):
    basic_info = State()
    details = State()
    payment = State()
    payment_qr = State()            # Upload button or skip
    verify_email = State()
    verify_code = State()
    poster = State()                # Upload button or skip

# Reason for rejecting a pending event (server admin)
class RejectEventReason(StatesGroup):
    waiting = State()

# Optional note when rejecting a payment proof (club moderator)
class RejectPaymentReason(StatesGroup):
    waiting = State()

# Contact details of a non-verified guest
class GuestRegistration(StatesGroup):
    name = State()
    email = State()
    phone = State()
