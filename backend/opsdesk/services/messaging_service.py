# Overview: Customer-facing message templates and the post-service message dispatcher.

from __future__ import annotations

import logging

from ..clients.delivery import CHANNEL_EMAIL, CHANNEL_WHATSAPP, DeliveryResult, send_safely
from ..extensions import db
from ..models import Appointment, Business, Customer, LoyaltyCard, PixCharge, Proposal
from ..models.scheduling import APPOINTMENT_COMPLETED
from opsdesk.time_utils import utcnow
from .concurrency import lock_for_update

logger = logging.getLogger(__name__)


def _money(value) -> str:
    return f"R$ {value:.2f}" if value is not None else "-"


def _business_name(business_id: int) -> str:
    business = db.session.get(Business, business_id)
    return business.name if business else "our team"


def preferred_channel(customer: Customer, requested: str | None = None) -> tuple[str | None, str | None]:
    """
    Pick (channel, recipient). An explicit request wins when the customer has
    that contact; otherwise WhatsApp is preferred over email.
    """
    if requested == CHANNEL_EMAIL and customer.email:
        return CHANNEL_EMAIL, customer.email
    if requested == CHANNEL_WHATSAPP and customer.phone:
        return CHANNEL_WHATSAPP, customer.phone
    if requested in (CHANNEL_EMAIL, CHANNEL_WHATSAPP):
        return requested, None
    if customer.phone:
        return CHANNEL_WHATSAPP, customer.phone
    if customer.email:
        return CHANNEL_EMAIL, customer.email
    return None, None


def proposal_payload(proposal: Proposal, customer: Customer) -> dict:
    lines = []
    for s in proposal.services or []:
        lines.append(f"- {s['description']} x{s['quantity']} @ {s['unit_price']}")
    body = [
        f"Hello {customer.name},",
        "",
        f"Here is your proposal from {_business_name(proposal.business_id)}: {proposal.title}",
        *lines,
        f"Total: {_money(proposal.final_amount)}",
    ]
    if proposal.deposit_amount:
        body.append(f"Deposit: {_money(proposal.deposit_amount)}")
    if proposal.valid_until:
        body.append(f"Valid until: {proposal.valid_until:%Y-%m-%d}")
    return {"subject": f"Proposal: {proposal.title}", "message": "\n".join(body)}


def proposal_follow_up_payload(proposal: Proposal, customer: Customer) -> dict:
    message = (
        f"Hello {customer.name}! Just checking in about the proposal "
        f"\"{proposal.title}\" ({_money(proposal.final_amount)}). "
        "Any questions? We're happy to help."
    )
    return {"subject": f"About your proposal: {proposal.title}", "message": message}


def payment_reminder_payload(charge: PixCharge) -> dict:
    message = (
        f"Hello {charge.customer_name}! A friendly reminder that your PIX payment of "
        f"{_money(charge.amount)} is still pending."
    )
    if charge.expires_at:
        message += f" The code expires at {charge.expires_at:%Y-%m-%d %H:%M} UTC."
    return {"subject": "Payment reminder", "message": message, "qr_code": charge.qr_code}


def daily_closing_payload(report: dict, business_name: str | None = None) -> dict:
    payments = report["payments"]
    body = [
        f"Daily closing for {business_name or 'your business'} - {report['date']}",
        "",
        f"Pix: {_money(payments['pix'])}",
        f"Card: {_money(payments['card'])}",
        f"Cash: {_money(payments['cash'])}",
        f"Total received: {_money(payments['total'])}",
        "",
        f"Services ({len(report['services'])}):",
    ]
    for s in report["services"]:
        who = f" ({s['customer']})" if s["customer"] else ""
        body.append(f"- {s['title']}{who}: {_money(s['amount'])} [{s['payment_method'] or 'not informed'}]")
    body.append("")
    body.append(f"Expenses ({len(report['expenses'])}):")
    for e in report["expenses"]:
        body.append(f"- {e['description']} [{e['category'] or 'uncategorized'}]: -{_money(e['amount'])}")
    body.append("")
    body.append(f"Balance: {_money(report['balance'])}")
    return {"subject": f"Daily closing - {report['date']}", "message": "\n".join(body)}


def post_service_payload(appointment: Appointment, customer: Customer, card: LoyaltyCard | None) -> dict:
    body = [
        f"Hello {customer.name}!",
        f"Thank you for choosing {_business_name(appointment.business_id)}.",
        "How was your experience? Your feedback matters to us.",
    ]
    if card is not None:
        line = f"Loyalty card: {card.current_stamps}/{card.stamps_required} stamps"
        if card.current_stamps == card.stamps_required - 1:
            line += " - your next visit is on us!"
        body.append(line)
    return {"subject": "Thank you for your visit", "message": "\n".join(body)}


def send_post_service_message(business_id: int, appointment_id: int) -> DeliveryResult:
    """
    Send the thank-you message for a completed appointment at most once.

    post_service_message_sent_at is checked and set under the appointment
    row lock, so repeated calls never send twice.
    """
    appointment = lock_for_update(
        db.session.query(Appointment).filter_by(id=appointment_id, business_id=business_id)
    ).first()
    if appointment is None or appointment.status != APPOINTMENT_COMPLETED:
        db.session.rollback()
        return DeliveryResult(success=False, error="appointment is not completed")
    if appointment.post_service_message_sent_at is not None:
        db.session.rollback()
        return DeliveryResult(success=True, error="already sent")

    customer = db.session.get(Customer, appointment.customer_id)
    card = (
        db.session.query(LoyaltyCard)
        .filter_by(business_id=business_id, customer_id=appointment.customer_id)
        .first()
    )
    channel, recipient = preferred_channel(customer)
    if channel is None:
        db.session.rollback()
        return DeliveryResult(success=False, error="customer has no contact")

    result = send_safely(channel, recipient, post_service_payload(appointment, customer, card))
    if result.success:
        appointment.post_service_message_sent_at = utcnow()
        db.session.commit()
    else:
        db.session.rollback()
        logger.warning("Post-service message for appointment %s failed: %s", appointment_id, result.error)
    return result
