"""
Engine Errors
=============

Every fatal condition raised by the engine derives from ConvoNetError:
- DimensionMismatchError: operand shapes are incompatible
- NumericInstabilityError: a NaN/Inf showed up at a checked boundary
- InvalidConfigurationError: the network configuration cannot be built

The training loop turns these into a terminal RunResult instead of letting
them escape (see network.ConvoNet.fit).
"""


class ConvoNetError(Exception):
    """Base class for all engine errors."""


class DimensionMismatchError(ConvoNetError, ValueError):
    """Operand shapes do not match the operation's contract."""


class NumericInstabilityError(ConvoNetError, ArithmeticError):
    """
    A matrix contains NaN or Inf at a checked boundary.

    Args:
        operation: Name of the operation (or layer stage) that produced it
        message: Optional detail
    """

    def __init__(self, operation, message=None):
        self.operation = operation
        if message is None:
            message = f"NaN or Inf detected in '{operation}'"
        super().__init__(message)


class InvalidConfigurationError(ConvoNetError, ValueError):
    """The configuration tree describes a network that cannot be built."""
