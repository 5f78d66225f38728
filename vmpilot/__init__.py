"""vmpilot: local lifecycle orchestration for named virtual machines."""

__version__ = "0.1.0"
