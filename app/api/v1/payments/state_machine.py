"""
Payment state machine for managing payment status transitions
"""

from typing import Dict, Optional, Set

from app.models.payment import PaymentStatus, PaymentType

# Gateway payment-intent vocabulary -> internal status
GATEWAY_STATUS_MAP: Dict[str, PaymentStatus] = {
    "awaiting_payment_method": PaymentStatus.AWAITING_PAYMENT,
    "awaiting_next_action": PaymentStatus.PROCESSING,
    "processing": PaymentStatus.PROCESSING,
    "succeeded": PaymentStatus.SUCCEEDED,
    "paid": PaymentStatus.SUCCEEDED,
    "failed": PaymentStatus.FAILED,
}

class PaymentStateMachine:
    """
    Manages valid payment status transitions
    """

    def __init__(self):
        # Gateway-driven payments
        self.transitions: Dict[PaymentStatus, Set[PaymentStatus]] = {
            PaymentStatus.PENDING: {
                PaymentStatus.AWAITING_PAYMENT,
                PaymentStatus.PROCESSING,
                PaymentStatus.SUCCEEDED,
                PaymentStatus.FAILED,
                PaymentStatus.CANCELLED,
            },
            PaymentStatus.AWAITING_PAYMENT: {
                PaymentStatus.PROCESSING,
                PaymentStatus.SUCCEEDED,
                PaymentStatus.FAILED,
                PaymentStatus.CANCELLED,
            },
            PaymentStatus.PROCESSING: {
                PaymentStatus.AWAITING_PAYMENT,  # Customer retried the QR
                PaymentStatus.SUCCEEDED,
                PaymentStatus.FAILED,
            },
            PaymentStatus.SUCCEEDED: {
                PaymentStatus.REFUNDED,
                PaymentStatus.PARTIALLY_REFUNDED,
            },
            PaymentStatus.PARTIALLY_REFUNDED: {
                PaymentStatus.PARTIALLY_REFUNDED,
                PaymentStatus.REFUNDED,
            },
            PaymentStatus.FAILED: set(),
            PaymentStatus.REFUNDED: set(),
            PaymentStatus.REJECTED: set(),
            # A QR scanned after a local cancel still settles
            PaymentStatus.CANCELLED: {PaymentStatus.SUCCEEDED},
        }

        # Vendor payouts, moved by admins rather than the gateway
        self.withdrawal_transitions: Dict[PaymentStatus, Set[PaymentStatus]] = {
            PaymentStatus.PENDING: {
                PaymentStatus.PROCESSING,
                PaymentStatus.SUCCEEDED,
                PaymentStatus.REJECTED,
                PaymentStatus.CANCELLED,
            },
            PaymentStatus.PROCESSING: {
                PaymentStatus.SUCCEEDED,
                PaymentStatus.REJECTED,
                PaymentStatus.CANCELLED,
            },
        }

    def _table(self, payment_type: Optional[PaymentType]) -> Dict[PaymentStatus, Set[PaymentStatus]]:
        if payment_type == PaymentType.WITHDRAW:
            return self.withdrawal_transitions
        return self.transitions

    def can_transition(
        self,
        current_status: PaymentStatus,
        new_status: PaymentStatus,
        payment_type: Optional[PaymentType] = None,
    ) -> bool:
        """
        Check if transition is valid

        Args:
            current_status: Current payment status
            new_status: Desired new status
            payment_type: Withdrawals use their own table

        Returns:
            True if transition is allowed
        """
        return new_status in self._table(payment_type).get(current_status, set())

    @staticmethod
    def map_gateway_status(gateway_status: Optional[str]) -> Optional[PaymentStatus]:
        if not gateway_status:
            return None
        return GATEWAY_STATUS_MAP.get(gateway_status)

payment_state_machine = PaymentStateMachine()
