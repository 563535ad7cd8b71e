"""
Withdrawal State Transition Validator
=====================================

A withdrawal never returns to pending once fee collection has been tried, and
completed / fee_collection_failed are terminal.
"""

import logging
from typing import Dict, Optional, Set, Tuple, Union

from models import WithdrawalStatus

logger = logging.getLogger(__name__)


class WithdrawalStateTransitionError(Exception):
    """Raised when an invalid withdrawal state transition is attempted"""
    pass


class WithdrawalStateValidator:
    """Validates WithdrawalAttempt status changes"""

    VALID_TRANSITIONS: Dict[WithdrawalStatus, Set[WithdrawalStatus]] = {
        WithdrawalStatus.PENDING: {
            WithdrawalStatus.FEE_COLLECTED_PENDING_TRANSFER,
            WithdrawalStatus.FEE_COLLECTION_FAILED,
        },
        # Stays put on a failed principal transfer, so the self-transition is allowed
        WithdrawalStatus.FEE_COLLECTED_PENDING_TRANSFER: {
            WithdrawalStatus.FEE_COLLECTED_PENDING_TRANSFER,
            WithdrawalStatus.COMPLETED,
        },
        WithdrawalStatus.COMPLETED: set(),
        WithdrawalStatus.FEE_COLLECTION_FAILED: set(),
    }

    TERMINAL_STATES: Set[WithdrawalStatus] = {
        WithdrawalStatus.COMPLETED,
        WithdrawalStatus.FEE_COLLECTION_FAILED,
    }

    # Fee is already taken in these states; the requester must never be charged again
    FEE_PAID_STATES: Set[WithdrawalStatus] = {
        WithdrawalStatus.FEE_COLLECTED_PENDING_TRANSFER,
        WithdrawalStatus.COMPLETED,
    }

    @staticmethod
    def _coerce(status: Union[str, WithdrawalStatus]) -> WithdrawalStatus:
        if isinstance(status, WithdrawalStatus):
            return status
        return WithdrawalStatus.from_value(status)

    @classmethod
    def validate_transition(
        cls,
        from_status: Union[str, WithdrawalStatus],
        to_status: Union[str, WithdrawalStatus],
        attempt_id: Optional[int] = None,
    ) -> Tuple[bool, str]:
        """
        Returns:
            Tuple[bool, str]: (is_valid, reason)
        """
        current = cls._coerce(from_status)
        target = cls._coerce(to_status)
        allowed = cls.VALID_TRANSITIONS.get(current, set())
        if target in allowed:
            return True, f"{current.value} → {target.value}"

        reason = f"Invalid withdrawal transition {current.value} → {target.value}"
        if current in cls.TERMINAL_STATES:
            reason += f" ({current.value} is terminal)"
        logger.error(f"🚫 WITHDRAWAL_TRANSITION_BLOCKED: attempt={attempt_id} {reason}")
        return False, reason

    @classmethod
    def ensure_transition(
        cls,
        from_status: Union[str, WithdrawalStatus],
        to_status: Union[str, WithdrawalStatus],
        attempt_id: Optional[int] = None,
    ) -> WithdrawalStatus:
        """Validate and return the target status, raising on an invalid move"""
        is_valid, reason = cls.validate_transition(from_status, to_status, attempt_id)
        if not is_valid:
            raise WithdrawalStateTransitionError(reason)
        return cls._coerce(to_status)

    @classmethod
    def is_fee_paid(cls, status: Union[str, WithdrawalStatus]) -> bool:
        return cls._coerce(status) in cls.FEE_PAID_STATES
