"""Ralph: drive a coding agent through a task list until every story passes."""

__version__ = "0.3.0"
