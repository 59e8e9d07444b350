"""Mirror a local JSON task list into an external workflow tracker."""

__version__ = "0.3.0"
