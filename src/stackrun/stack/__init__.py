"""Stack definition files."""

from stackrun.stack.loader import FILTERS, StackLoader, build_stack, load_stack

__all__ = [
    "FILTERS",
    "StackLoader",
    "build_stack",
    "load_stack",
]
