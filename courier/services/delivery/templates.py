"""Message templates for the coordinator, separates wording from delivery."""

from datetime import datetime, timezone
from typing import Optional


class MessageTemplates:
    """Plain-text bodies for each message purpose."""

    def __init__(self, sender_name: str = "Courier"):
        self.sender_name = sender_name

    def otp(self, code: str, ttl_minutes: int, display_name: Optional[str] = None) -> str:
        """Template for a verification code message."""
        greeting = f"Hello {display_name},\n" if display_name else ""
        return (
            f"{greeting}"
            f"Your {self.sender_name} verification code is: {code}\n"
            f"The code is valid for {ttl_minutes} minutes.\n"
            f"Do not share this code with anyone."
        )

    @staticmethod
    def document_caption(filename: str, caption: Optional[str] = None) -> str:
        """Caption used when the caller did not supply one."""
        return caption if caption else f"📄 {filename}"

    def admin_alert(self, body: str, at: Optional[datetime] = None) -> str:
        """Template for an admin notification."""
        stamp = (at or datetime.now(timezone.utc)).strftime("%Y-%m-%d %H:%M UTC")
        return f"🔔 {self.sender_name} admin\n{stamp}\n\n{body}"
