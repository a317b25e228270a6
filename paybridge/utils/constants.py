class Emojis:
    SUCCESS = "✅"
    ERROR = "❌"
    WARNING = "⚠️"
    ROCKET = "🚀"
    STORE = "🛒"


class Colors:
    SUCCESS = 0x22C55E
    ERROR = 0xEF4444
    WARNING = 0xFACC15
    INFO = 0x3B82F6


APPROVED_STATUSES = frozenset({"success", "approved", "ok", "true", "paid", "completed"})

STEAMID64_PATTERN = r"^\d{17}$"
