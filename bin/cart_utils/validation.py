"""Validation functions and the error types that stop an analysis run"""


class PipelineError(Exception):
    """Base class for all errors raised by the analysis stages"""


class LoadError(PipelineError):
    """Input matrix files are missing or malformed"""


class EmptyResultError(PipelineError):
    """A filter or subset left no cells to work with"""


class ParameterError(PipelineError):
    """An analysis parameter is outside of its valid range"""


def validateName(name: str, display_name: str = "Name", other_chars: str = "-._"):
    """
    Check name for invalid characters
    Raise ParameterError for invalid names

    Args:
        name: str to check
        display_name: name to display in error message
        other_chars: what other characters are allowed beside alpha-numeric
    """
    if not name:
        raise ParameterError(f"{display_name} should not be empty")
    for n in name:
        if not (n.isalnum() or n in other_chars):
            raise ParameterError(
                f"{display_name} should only contain [a-z],[A-Z],[0-9], or "
                f"{', '.join([f'[{char}]' for char in other_chars])}: '{name}'"
            )
    if not name[0].isalpha():
        raise ParameterError(f"{display_name} should start with a letter: {name}")


def validate_fraction(value: float, display_name: str, inclusive_zero: bool = True):
    """Raise ParameterError unless @value lies in [0, 1] (or (0, 1] when zero is excluded)"""
    lower_ok = value >= 0 if inclusive_zero else value > 0
    if not (lower_ok and value <= 1):
        interval = "[0, 1]" if inclusive_zero else "(0, 1]"
        raise ParameterError(f"{display_name} must fall in the range {interval}: {value}")


def validate_positive(value: float, display_name: str, allow_zero: bool = False):
    """Raise ParameterError unless @value is > 0 (or >= 0 when @allow_zero)"""
    if value < 0 or (value == 0 and not allow_zero):
        bound = ">= 0" if allow_zero else "> 0"
        raise ParameterError(f"{display_name} must be {bound}: {value}")


def ensure_not_empty(n_cells: int, what: str):
    """Raise EmptyResultError when a selection of cells is empty"""
    if n_cells == 0:
        raise EmptyResultError(f"{what} left no cells")
