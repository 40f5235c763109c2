"""Custom exceptions for configuration management."""

from typing import List, Optional


class ConfigurationError(Exception):
    """Raised when configuration cannot be loaded or validated.

    Collects every validation problem plus suggestions for fixing them, and
    renders them as a numbered report in ``str(error)``.
    """

    def __init__(
        self,
        message: str,
        errors: Optional[List[str]] = None,
        suggestions: Optional[List[str]] = None,
    ):
        self.message = message
        self.errors = list(errors or [])
        self.suggestions = list(suggestions or [])
        super().__init__(self._format_message())

    def _format_message(self) -> str:
        lines = [self.message]
        if self.errors:
            lines.append("\nValidation Errors:")
            lines.extend(f"  {i}. {error}" for i, error in enumerate(self.errors, 1))
        if self.suggestions:
            lines.append("\nSuggestions:")
            lines.extend(f"  - {suggestion}" for suggestion in self.suggestions)
        return "\n".join(lines)

    def __str__(self) -> str:
        return self._format_message()

    def add_error(self, error: str) -> None:
        self.errors.append(error)

    def add_suggestion(self, suggestion: str) -> None:
        self.suggestions.append(suggestion)
