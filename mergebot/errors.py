class MergebotError(Exception):
    """Base class for errors raised by mergebot."""


class ConfigError(MergebotError):
    """A repository policy file could not be parsed or validated."""


class PullContextError(MergebotError):
    """Data for a pull request snapshot could not be fetched."""


class EvaluationError(MergebotError):
    """A merge or update decision could not be made.

    Callers must treat this as a negative decision.
    """
