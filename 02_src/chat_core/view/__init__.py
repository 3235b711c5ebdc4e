"""Responsive view state."""

from .coordinator import DEFAULT_BREAKPOINT, IViewCoordinator, ViewCoordinator

__all__ = ["DEFAULT_BREAKPOINT", "IViewCoordinator", "ViewCoordinator"]
