from .renewals import RenewalBatchResult, find_due_subscription_ids, process_all_due_renewals
from .service import RenewalOutcome, SubscriptionService
from .state_machine import LIVE_STATES, RENEWABLE_STATES, TERMINAL_STATES, SubscriptionStateMachine

__all__ = [
    "LIVE_STATES",
    "RENEWABLE_STATES",
    "RenewalBatchResult",
    "RenewalOutcome",
    "SubscriptionService",
    "SubscriptionStateMachine",
    "TERMINAL_STATES",
    "find_due_subscription_ids",
    "process_all_due_renewals",
]
