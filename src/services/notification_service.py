"""
Unlock notifications via Resend

Admins hear about completed unlock payments, guests and hosts about
cancellations, guests about bookings created from an unlock.
https://resend.com/docs/send-with-python

Sending never raises: failures are logged and reported as False so that a
mail outage cannot affect payment state.
"""

import asyncio
from decimal import Decimal
from typing import List, Optional

import resend
from loguru import logger

from config.config import (
    ADMIN_EMAILS,
    LOCAL_CURRENCY,
    RESEND_API_KEY,
    RESEND_FROM_EMAIL,
    RESEND_FROM_NAME,
)
from src.database.models import Booking, DealCode, Property, PropertyAddressUnlock, User


class UnlockNotificationService:
    """
    Email notifications for the unlock workflow
    """

    def __init__(
        self,
        api_key: str = RESEND_API_KEY,
        admin_emails: Optional[List[str]] = None,
        from_email: str = RESEND_FROM_EMAIL,
        from_name: str = RESEND_FROM_NAME,
    ):
        self.api_key = api_key
        self.admin_emails = admin_emails if admin_emails is not None else ADMIN_EMAILS
        self.from_address = f"{from_name} <{from_email}>"

        if not self.api_key:
            logger.warning("RESEND_API_KEY not set - unlock notifications disabled")
        else:
            resend.api_key = self.api_key

    def is_available(self) -> bool:
        return bool(self.api_key)

    async def _send(self, to: List[str], subject: str, html: str) -> bool:
        recipients = [address for address in to if address]
        if not self.is_available() or not recipients:
            return False

        params: resend.Emails.SendParams = {
            "from": self.from_address,
            "to": recipients,
            "subject": subject,
            "html": html,
        }

        try:
            response = await asyncio.to_thread(resend.Emails.send, params)
            logger.info(f"Email '{subject}' sent to {len(recipients)} recipient(s): {response.get('id')}")
            return True
        except Exception as e:
            logger.error(f"Failed to send email '{subject}': {e}")
            return False

    async def notify_unlock_completed(
        self, unlock: PropertyAddressUnlock, property_: Property, guest: User
    ) -> bool:
        """Tell admins a guest paid to unlock an address"""
        amount = _format_local(unlock.payment_amount_local, unlock.currency)
        html = f"""
        <h2>Address unlock payment received</h2>
        <p><strong>{guest.full_name}</strong> ({guest.email}) unlocked
        <strong>{property_.name}</strong> (#{property_.id}).</p>
        <ul>
          <li>Unlock: {unlock.unlock_id}</li>
          <li>Method: {unlock.payment_method}</li>
          <li>Amount: {amount} (${unlock.payment_amount_usd})</li>
          <li>Provider: {unlock.payment_provider}</li>
          <li>Reference: {unlock.transaction_reference}</li>
        </ul>
        """
        return await self._send(self.admin_emails, f"Unlock payment: {property_.name}", html)

    async def notify_unlock_cancelled(
        self,
        unlock: PropertyAddressUnlock,
        property_: Property,
        guest: User,
        host: Optional[User],
        refund_amount: Optional[Decimal],
        deal_code: Optional[DealCode],
    ) -> bool:
        """Tell the guest what they get back and the host that interest was withdrawn"""
        guest_lines = [f"<p>Your unlock of <strong>{property_.name}</strong> has been cancelled.</p>"]
        if refund_amount is not None:
            guest_lines.append(
                f"<p>A refund of {_format_local(refund_amount, unlock.currency)} is being processed.</p>"
            )
        if deal_code is not None:
            guest_lines.append(
                f"<p>Use deal code <strong>{deal_code.code}</strong> to unlock another property for free "
                f"before {deal_code.expires_at.date()}.</p>"
            )
        guest_sent = await self._send(
            [guest.email], "Your address unlock was cancelled", "\n".join(guest_lines)
        )

        host_sent = False
        if host is not None:
            host_sent = await self._send(
                [host.email],
                f"Unlock cancelled: {property_.name}",
                f"<p>A guest cancelled their address unlock for <strong>{property_.name}</strong>.</p>"
                f"<p>Reason: {unlock.appreciation_feedback or 'not given'}</p>",
            )

        return guest_sent and (host is None or host_sent)

    async def notify_booking_created(
        self, booking: Booking, property_: Property, guest: User, payment_url: str
    ) -> bool:
        """Send the guest the link to pay the remaining 70%"""
        html = f"""
        <h2>Your booking at {property_.name}</h2>
        <p>{booking.check_in} to {booking.check_out}, {booking.guests} guest(s).</p>
        <p>Deposit applied from your unlock: {booking.paid_amount}.
        Remaining: {booking.remaining_amount}.</p>
        <p><a href="{payment_url}">Complete your payment</a></p>
        """
        return await self._send([guest.email], f"Booking {booking.id} created", html)


def _format_local(amount, currency: Optional[str] = None) -> str:
    return f"{Decimal(amount):,.0f} {currency or LOCAL_CURRENCY}"
