"""
Error hierarchy shared by the ledger and rule engine.

Every failure belongs to one of three families so callers can decide
whether a retry is safe:

- ValidationError: the input is wrong, fix it before retrying.
- NotFoundError: an identifier does not resolve.
- ConflictError: the request collides with existing state, do not blindly retry.
"""


class CoreError(Exception):
    pass


class ValidationError(CoreError):
    pass


class NotFoundError(CoreError):
    pass


class ConflictError(CoreError):
    pass


class InvalidAmount(ValidationError):
    pass


class SelfReferral(ValidationError):
    pass


class MalformedRule(ValidationError):
    pass


class UserNotFound(NotFoundError):
    pass


class RewardNotFound(NotFoundError):
    pass


class EntryNotFound(NotFoundError):
    pass


class RuleNotFound(NotFoundError):
    pass


class NoCreditEntry(NotFoundError):
    pass


class IdempotencyConflict(ConflictError):
    pass


class AlreadyVoid(ConflictError):
    pass


class AlreadyReversed(ConflictError):
    pass


class EmailAlreadyExists(ConflictError):
    pass


class RewardOwnedEntry(ConflictError):
    pass


class InvalidTransition(ConflictError):
    def __init__(self, current, target, allowed):
        self.current = current
        self.target = target
        self.allowed = tuple(allowed)
        allowed_text = ", ".join(str(s.value) for s in self.allowed) or "none"
        super().__init__(
            f"Invalid status transition from {current.value} to {target.value}. "
            f"Allowed transitions: {allowed_text}"
        )
