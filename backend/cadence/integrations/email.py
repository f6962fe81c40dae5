from __future__ import annotations

import asyncio
import smtplib
from email.mime.text import MIMEText
from typing import Optional

from loguru import logger


class SmtpEmailTransport:
    def __init__(
        self,
        *,
        host: Optional[str],
        port: int = 587,
        user: Optional[str] = None,
        password: Optional[str] = None,
        from_addr: Optional[str] = None,
    ) -> None:
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.from_addr = from_addr or user

    def is_available(self) -> bool:
        return bool(self.host and self.from_addr)

    async def send_email(self, to: str, subject: str, html: str) -> bool:
        if not self.is_available():
            logger.warning("SMTP host/from missing; email to {} not sent", to)
            return False
        return await asyncio.to_thread(self._send_sync, to, subject, html)

    def _send_sync(self, to: str, subject: str, html: str) -> bool:
        msg = MIMEText(html, "html")
        msg["Subject"] = subject
        msg["From"] = self.from_addr
        msg["To"] = to

        try:
            with smtplib.SMTP(self.host, self.port) as server:
                server.starttls()
                if self.user and self.password:
                    server.login(self.user, self.password)
                server.sendmail(self.from_addr, [to], msg.as_string())
        except (smtplib.SMTPException, OSError) as exc:
            logger.error("SMTP send to {} failed: {}", to, exc)
            return False
        return True
