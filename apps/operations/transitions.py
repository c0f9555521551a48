"""
Operation status state machine

    pending -> in_progress -> completed
       |            |
       +------------+--> cancelled

Legacy statuses (verificando, iniciando_provisionamento, em_analise) are
type-specific aliases of in_progress. completed and cancelled are terminal.
"""

from .models import OperationStatus, OperationType

IN_PROGRESS_STATES = frozenset(
    {
        OperationStatus.IN_PROGRESS,
        OperationStatus.VERIFICANDO,
        OperationStatus.INICIANDO_PROVISIONAMENTO,
        OperationStatus.EM_ANALISE,
    }
)

TERMINAL_STATES = frozenset({OperationStatus.COMPLETED, OperationStatus.CANCELLED})

# alias -> the only operation type it may be used with
STATUS_ALIAS_TYPES = {
    OperationStatus.VERIFICANDO: OperationType.CTO,
    OperationStatus.INICIANDO_PROVISIONAMENTO: OperationType.INSTALLATION,
    OperationStatus.EM_ANALISE: OperationType.RMA,
}

ALLOWED_TRANSITIONS = {
    OperationStatus.PENDING: IN_PROGRESS_STATES | {OperationStatus.CANCELLED},
    **{state: IN_PROGRESS_STATES | {OperationStatus.PENDING, OperationStatus.COMPLETED, OperationStatus.CANCELLED} for state in IN_PROGRESS_STATES},
    OperationStatus.COMPLETED: frozenset(),
    OperationStatus.CANCELLED: frozenset(),
}


def parse_status(value) -> OperationStatus:
    """Raises ValueError for strings outside the status domain"""
    return OperationStatus(value)


def is_terminal(status) -> bool:
    return parse_status(status) in TERMINAL_STATES


def is_in_progress(status) -> bool:
    return parse_status(status) in IN_PROGRESS_STATES


def can_transition(current, target, operation_type=None, strict: bool = True) -> bool:
    """
    Check a status change against the transitions table

    Args:
        current: Status the operation is in now
        target: Requested status
        operation_type: Type of the operation, used to police legacy aliases
        strict: When False, any non-terminal status may move to any known status

    Returns:
        True if the change is allowed
    """
    current = parse_status(current)
    target = parse_status(target)

    if current in TERMINAL_STATES:
        return False

    if not strict:
        return True

    alias_type = STATUS_ALIAS_TYPES.get(target)
    if alias_type is not None and operation_type is not None and alias_type != operation_type:
        return False

    return target in ALLOWED_TRANSITIONS[current]
