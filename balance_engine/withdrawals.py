from .exceptions import InvalidState, ValidationError
from .models import AccountDetails, WithdrawalAction, WithdrawalMethod, WithdrawalStatus


# pending is the only state a withdrawal is created in; completed and rejected are final
TRANSITIONS: dict[WithdrawalStatus, dict[WithdrawalAction, WithdrawalStatus]] = {
    WithdrawalStatus.PENDING: {
        WithdrawalAction.APPROVE: WithdrawalStatus.COMPLETED,
        WithdrawalAction.REJECT: WithdrawalStatus.REJECTED,
    },
    WithdrawalStatus.PROCESSING: {},
    WithdrawalStatus.COMPLETED: {},
    WithdrawalStatus.REJECTED: {},
}

INITIAL_STATUS = WithdrawalStatus.PENDING


def is_terminal(status: WithdrawalStatus) -> bool:
    return status in (WithdrawalStatus.COMPLETED, WithdrawalStatus.REJECTED)


def next_status(current: WithdrawalStatus, action: WithdrawalAction) -> WithdrawalStatus:
    if is_terminal(current):
        raise InvalidState(f"Withdrawal is already {current.value}")
    target = TRANSITIONS[current].get(action)
    if target is None:
        raise InvalidState(f"Cannot {action.value} a withdrawal that is {current.value}")
    return target


def validate_account_details(method: WithdrawalMethod, details: AccountDetails) -> None:
    if method == WithdrawalMethod.BANK_TRANSFER:
        if not (details.account_name and details.account_number and details.bank_name):
            raise ValidationError("Missing bank account details")
    elif method in (WithdrawalMethod.ESEWA, WithdrawalMethod.KHALTI):
        if not details.phone_number:
            raise ValidationError("Phone number is required for mobile payment methods")
