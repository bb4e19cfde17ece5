"""
Channel senders for payment reminders.

Email goes out over SMTP, WhatsApp through the Twilio REST API and SMS
through PhilSMS. Every sender returns a `SendResult` on success and raises
`ChannelSendError` when the provider rejects or cannot be reached.
"""

import asyncio
import logging
import re
import smtplib
from email.message import EmailMessage
from email.utils import formataddr, make_msgid
from typing import Optional, Protocol

import httpx

from credilife.core.config import settings
from credilife.core.exceptions import ChannelSendError, ConfigurationError
from credilife.schemas.notification_schema import ChannelEnum, SendResult

logger = logging.getLogger(__name__)


class EmailSender(Protocol):
    async def send(self, to: str, subject: str, text_body: str, html_body: Optional[str] = None) -> SendResult:
        ...


class MessageSender(Protocol):
    async def send(self, to: str, message: str) -> SendResult:
        ...


def _mask_recipient(value: str) -> str:
    return f"{value[:5]}...***" if value else "<none>"


class SmtpEmailSender:
    """Sends reminder emails through the configured SMTP relay."""

    def __init__(
        self,
        host: Optional[str] = None,
        port: Optional[int] = None,
        username: Optional[str] = None,
        password: Optional[str] = None,
        use_tls: Optional[bool] = None,
        from_email: Optional[str] = None,
        from_name: Optional[str] = None,
        timeout: float = 30.0,
    ):
        self.host = host or settings.SMTP_HOST
        self.port = port or settings.SMTP_PORT
        self.username = username if username is not None else settings.SMTP_USERNAME
        self.password = password if password is not None else settings.SMTP_PASSWORD
        self.use_tls = settings.SMTP_USE_TLS if use_tls is None else use_tls
        self.from_email = from_email or settings.EMAIL_FROM
        self.from_name = from_name or settings.EMAIL_FROM_NAME
        self.timeout = timeout

        if self.host:
            logger.info(f"SMTP email sender initialized for {self.host}:{self.port}")
        else:
            logger.warning("SMTP_HOST is not configured; email reminders cannot be sent")

    @property
    def configured(self) -> bool:
        return bool(self.host)

    def _build_message(self, to: str, subject: str, text_body: str, html_body: Optional[str]) -> EmailMessage:
        message = EmailMessage()
        message["From"] = formataddr((self.from_name, self.from_email))
        message["To"] = to
        message["Subject"] = subject
        message["Message-ID"] = make_msgid(domain=self.from_email.split("@")[-1])
        message.set_content(text_body)
        if html_body:
            message.add_alternative(html_body, subtype="html")
        return message

    def _deliver(self, message: EmailMessage) -> None:
        # Port 465 is implicit TLS; anything else upgrades with STARTTLS when enabled
        if self.port == 465:
            server = smtplib.SMTP_SSL(self.host, self.port, timeout=self.timeout)
        else:
            server = smtplib.SMTP(self.host, self.port, timeout=self.timeout)
        with server:
            if self.port != 465 and self.use_tls:
                server.starttls()
            if self.username and self.password:
                server.login(self.username, self.password)
            server.send_message(message)

    async def send(self, to: str, subject: str, text_body: str, html_body: Optional[str] = None) -> SendResult:
        if not self.configured:
            raise ConfigurationError("Email sender not initialized. Please configure SMTP_HOST")

        message = self._build_message(to, subject, text_body, html_body)
        logger.info(f"Attempting to send email to {_mask_recipient(to)}. Subject: {subject}")
        try:
            await asyncio.to_thread(self._deliver, message)
        except (smtplib.SMTPException, OSError) as e:
            logger.error(f"SMTP error sending email: {str(e)}")
            raise ChannelSendError(ChannelEnum.email.value, f"Failed to send email: {str(e)}") from e

        logger.info(f"Email sent successfully to {_mask_recipient(to)}. Message-ID: {message['Message-ID']}")
        return SendResult(success=True, message_id=message["Message-ID"])


class TwilioWhatsAppSender:
    """Sends WhatsApp messages via the Twilio Messages API."""

    def __init__(
        self,
        account_sid: Optional[str] = None,
        auth_token: Optional[str] = None,
        from_number: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.account_sid = account_sid or settings.TWILIO_ACCOUNT_SID
        self.auth_token = auth_token or settings.TWILIO_AUTH_TOKEN
        self.from_number = from_number or settings.TWILIO_WHATSAPP_FROM
        self._client = client

        if self.configured:
            logger.info("Twilio WhatsApp sender initialized successfully")
        else:
            logger.warning(
                "Twilio WhatsApp credentials not configured. Set TWILIO_ACCOUNT_SID, "
                "TWILIO_AUTH_TOKEN and TWILIO_WHATSAPP_FROM environment variables"
            )

    @property
    def configured(self) -> bool:
        return bool(self.account_sid and self.auth_token and self.from_number)

    @property
    def api_url(self) -> str:
        return f"https://api.twilio.com/2010-04-01/Accounts/{self.account_sid}/Messages.json"

    @staticmethod
    def _whatsapp_address(number: str) -> str:
        number = number.strip()
        return number if number.startswith("whatsapp:") else f"whatsapp:{number}"

    async def _post(self, data: dict) -> httpx.Response:
        auth = (self.account_sid, self.auth_token)
        if self._client is not None:
            return await self._client.post(self.api_url, data=data, auth=auth)
        async with httpx.AsyncClient(timeout=30.0) as client:
            return await client.post(self.api_url, data=data, auth=auth)

    async def send(self, to: str, message: str) -> SendResult:
        if not self.configured:
            raise ConfigurationError(
                "WhatsApp sender not initialized. Please configure "
                "TWILIO_ACCOUNT_SID, TWILIO_AUTH_TOKEN and TWILIO_WHATSAPP_FROM"
            )

        payload = {
            "From": self._whatsapp_address(self.from_number),
            "To": self._whatsapp_address(to),
            "Body": message,
        }
        logger.info(f"Attempting to send WhatsApp message to {_mask_recipient(to)}. Length: {len(message)} chars")

        try:
            response = await self._post(payload)
        except httpx.HTTPError as e:
            logger.error(f"HTTP error sending WhatsApp message: {str(e)}")
            raise ChannelSendError(ChannelEnum.whatsapp.value, f"Failed to send WhatsApp message: {str(e)}") from e

        try:
            response_data = response.json()
        except ValueError:
            logger.error(f"Failed to parse Twilio response: {response.text}")
            raise ChannelSendError(ChannelEnum.whatsapp.value, f"Invalid JSON response from Twilio: {response.text}")

        if response.status_code >= 400:
            error_message = response_data.get("message", "Unknown error")
            logger.error(f"Twilio API error: HTTP {response.status_code} - {error_message}")
            raise ChannelSendError(ChannelEnum.whatsapp.value, f"Twilio API error: {error_message}")

        logger.info(f"WhatsApp message sent to {_mask_recipient(to)}. SID: {response_data.get('sid')}")
        return SendResult(success=True, message_id=response_data.get("sid"))


PHILSMS_API_URL = "https://dashboard.philsms.com/api/v3/sms/send"

# Characters that would switch an SMS to UCS-2 encoding and cut its length limit
_SMS_TRANSLATION = str.maketrans({
    '₱': 'PHP ',
    'é': 'e',
    'ñ': 'n',
    'Ñ': 'N',
    '‘': "'",
    '’': "'",
    '“': '"',
    '”': '"',
    '–': '-',
    '—': '-',
})
_PHONE_SEPARATORS = re.compile(r"[\s\-().]")
_PH_MOBILE = re.compile(r"^(?:63|0)?(\d{10})$")


class PhilSmsSender:
    """Sends SMS messages via the PhilSMS API."""

    def __init__(
        self,
        api_token: Optional[str] = None,
        sender_id: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.api_token = api_token or settings.PHILSMS_API_TOKEN
        self.sender_id = sender_id or settings.PHILSMS_SENDER_ID  # brand name, max 11 chars
        self._client = client

        if not self.configured:
            logger.warning("PhilSMS sender disabled: PHILSMS_API_TOKEN and PHILSMS_SENDER_ID are required")

    @property
    def configured(self) -> bool:
        return bool(self.api_token and self.sender_id)

    @staticmethod
    def sanitize_message(message: str) -> str:
        """Replace characters that would force a unicode SMS, then drop anything non-ASCII."""
        return message.translate(_SMS_TRANSLATION).encode("ascii", "ignore").decode("ascii")

    @staticmethod
    def normalize_phone_number(phone_number: str) -> str:
        """
        Normalize a Philippine mobile number to 63XXXXXXXXXX.

        Accepts "9171234567", "09171234567", "+639171234567" or
        "639171234567", with spaces, dashes or brackets in between.
        Raises ValueError for anything else.
        """
        if not phone_number:
            raise ValueError("Phone number cannot be empty")

        digits = _PHONE_SEPARATORS.sub("", phone_number).lstrip("+")
        match = _PH_MOBILE.match(digits)
        if not match:
            raise ValueError(f"Invalid Philippine mobile number: expected 63 followed by 10 digits, got {digits!r}")
        return f"63{match.group(1)}"

    async def _post(self, payload: dict) -> httpx.Response:
        headers = {"Authorization": f"Bearer {self.api_token}", "Accept": "application/json"}
        if self._client is not None:
            return await self._client.post(PHILSMS_API_URL, headers=headers, json=payload)
        async with httpx.AsyncClient(timeout=30.0) as client:
            return await client.post(PHILSMS_API_URL, headers=headers, json=payload)

    async def send(self, to: str, message: str) -> SendResult:
        if not self.configured:
            raise ConfigurationError("PhilSMS sender is not configured (PHILSMS_API_TOKEN, PHILSMS_SENDER_ID)")

        try:
            recipient = self.normalize_phone_number(to)
        except ValueError as e:
            raise ChannelSendError(ChannelEnum.sms.value, str(e)) from e

        text = self.sanitize_message(message)
        logger.info(f"Sending SMS to {_mask_recipient(recipient)} ({len(text)} chars, sender {self.sender_id})")

        try:
            response = await self._post({
                "recipient": recipient,
                "sender_id": self.sender_id,
                "type": "plain",
                "message": text,
            })
        except httpx.HTTPError as e:
            logger.error(f"PhilSMS request failed: {e}")
            raise ChannelSendError(ChannelEnum.sms.value, f"Failed to send SMS: {e}") from e

        try:
            body = response.json()
        except ValueError:
            logger.error(f"PhilSMS returned a non-JSON body (HTTP {response.status_code})")
            raise ChannelSendError(ChannelEnum.sms.value, f"Invalid JSON response from PhilSMS: {response.text}")

        # {"status": "success", "data": {"uid": ...}} or {"status": "error", "message": ...}
        if body.get("status") != "success":
            reason = body.get("message", "Unknown error")
            logger.error(f"PhilSMS rejected the message: HTTP {response.status_code} - {reason}")
            raise ChannelSendError(ChannelEnum.sms.value, f"PhilSMS API error: {reason}")

        data = body.get("data") or {}
        logger.info(f"SMS sent to {_mask_recipient(recipient)}. UID: {data.get('uid')}, status: {data.get('status')}")
        return SendResult(success=True, message_id=data.get("uid"))
