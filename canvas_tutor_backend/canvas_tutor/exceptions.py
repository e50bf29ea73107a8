"""
Error taxonomy for script compilation, synthesis and capability access.
"""


class TutorError(RuntimeError):
    """Base class for every failure raised by the tutor backend."""


class ToolLoopExceeded(TutorError):
    """The generation capability kept requesting tools past the round bound."""

    def __init__(self, max_rounds: int):
        super().__init__(f"Tool resolution did not finish within {max_rounds} rounds")
        self.max_rounds = max_rounds


class MalformedCompilerOutput(TutorError):
    """A terminal response could not be turned into a valid command list."""


class InvalidScriptReference(TutorError):
    """A FillTable points at an unknown table, or SessionEnd is not last."""

    def __init__(self, message: str, index: int = -1):
        super().__init__(message)
        self.index = index


class SynthesisFailure(TutorError):
    """Speech synthesis failed for a single narration."""


class CapabilityUnavailable(TutorError):
    """An external capability was unreachable, timed out or errored."""

    def __init__(self, capability: str, reason: str):
        super().__init__(f"{capability} unavailable: {reason}")
        self.capability = capability
        self.reason = reason
