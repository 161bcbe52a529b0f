"""
Entity handlers.

One handler per stream. Each takes a decoded record plus the collaborators
it needs and reports whether the record was handled. A handled record is
committed; an unhandled one is fetched again by its reader. Error details
are logged here and never cross into the dispatcher.

Invariants:
    - Handlers communicate only through the customer store
    - "Not found" is a branch, not a failure
    - A preference never creates a customer row
"""

from __future__ import annotations

import logging
import uuid

from ..delivery.fanout import DeliveryFanout
from ..delivery.sms import SmsDeliveryError, SmsTransport
from .customer_store import Customer, CustomerNotFoundError, CustomerStore, CustomerStoreError
from .events import ChangeEvent, ContactPreference, NotificationRequest, RetryRecord

logger = logging.getLogger(__name__)


async def handle_customer_change(event: ChangeEvent[Customer], store: CustomerStore) -> bool:
    """Mirror a customer create, update or delete into the store.

    Updates only touch the name; contact fields belong to the preference
    stream.
    """
    try:
        if event.after is not None:
            try:
                existing = await store.find_by_id(event.after.id)
            except CustomerNotFoundError:
                await store.create(Customer(id=event.after.id, name=event.after.name))
            else:
                existing.name = event.after.name
                await store.save(existing)

        elif event.before is not None:
            await store.delete(event.before.id)

    except CustomerStoreError as e:
        logger.error(f"Could not apply customer change: {e}")
        return False

    return True


async def handle_preference_change(
    event: ChangeEvent[ContactPreference],
    store: CustomerStore,
    sms_channel_type_id: uuid.UUID,
) -> bool:
    """Copy an SMS contact preference onto its customer row.

    Preferences for other channels, deletions and preferences of customers
    not (yet) known locally are ignored.
    """
    preference = event.after
    if preference is None or preference.channel_type_id != sms_channel_type_id:
        return True

    try:
        customer = await store.find_by_id(preference.customer_id)
    except CustomerNotFoundError:
        logger.info(
            "Dropping preference for unknown customer",
            extra={"customer_id": str(preference.customer_id)},
        )
        return True
    except CustomerStoreError as e:
        logger.error(f"Could not look up customer for preference: {e}")
        return False

    customer.contact_allowed = preference.contact_customer
    customer.phone_number = preference.lookup_key

    try:
        await store.save(customer)
    except CustomerStoreError as e:
        logger.error(f"Could not save contact preference: {e}")
        return False

    return True


async def handle_notification(
    event: ChangeEvent[NotificationRequest],
    store: CustomerStore,
    fanout: DeliveryFanout,
) -> bool:
    """Start texting every opted-in customer.

    Returns as soon as the fan-out is started; delivery failures are
    handled by the fan-out and never fail the notification record.
    """
    if event.after is None or not event.after.text:
        return True

    try:
        customers = await store.find_where(contact_allowed=True)
    except CustomerStoreError as e:
        logger.error(f"Error while fetching contactable customers: {e}")
        return False

    fanout.dispatch(customers, event.after.text)
    return True


async def handle_retry_delivery(record: RetryRecord, transport: SmsTransport) -> bool:
    """Attempt one more delivery of a previously failed message."""
    if not record.text or not record.phone_number:
        return True

    try:
        await transport.send(record.phone_number, record.text)
    except SmsDeliveryError as e:
        logger.error(f"Unable to process a notification from the retry queue: {e}")
        return False

    return True
