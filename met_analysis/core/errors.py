class TrialAnalysisError(ValueError):
    """Base class for errors that stop an analysis before any result is produced."""


class ConfigurationError(TrialAnalysisError):
    """Arguments do not describe a runnable analysis (policies, keys, columns)."""


class StructuralError(TrialAnalysisError):
    """The trial design cannot support the requested statistics."""
