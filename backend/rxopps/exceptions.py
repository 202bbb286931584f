"""Domain errors raised by the opportunity engine."""


class TriggerConfigError(ValueError):
    """A trigger carries a membership rule or field that cannot be parsed."""

    def __init__(self, trigger_code: str | None, message: str):
        self.trigger_code = trigger_code
        prefix = f"Trigger {trigger_code}: " if trigger_code else ""
        super().__init__(f"{prefix}{message}")


class InvalidTransitionError(ValueError):
    """Requested opportunity status change is not allowed from the current status."""


class ApprovalStateError(ValueError):
    """A discovery queue item is not in a state that allows the requested decision."""


class ActionedOpportunityError(ValueError):
    """Attempt to delete an opportunity that has left Not Submitted."""


class NotFoundError(LookupError):
    pass
