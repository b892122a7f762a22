"""
Mapper event listeners

Payment.net_amount is derived from amount and fee on every ORM insert and
update, so the pair can never drift apart through the ORM.
"""

import logging

from sqlalchemy import event

logger = logging.getLogger(__name__)

def _sync_net_amount(mapper, connection, target):
    target.recompute_net_amount()

def register_model_listeners():
    """Register listeners once; safe to call repeatedly"""
    from .payment import Payment

    for name in ("before_insert", "before_update"):
        if not event.contains(Payment, name, _sync_net_amount):
            event.listen(Payment, name, _sync_net_amount)
