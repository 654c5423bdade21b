"""
Standardized Error Handling Utilities
=====================================

Factory functions for the result dictionaries returned by the search
pipeline, so every entry point reports success and failure the same way.
"""

from typing import Dict, Any, Optional
from datetime import datetime


class ErrorResultFactory:
    """Factory for standardized result dictionaries."""

    @staticmethod
    def create_error_result(error_message: str,
                            error_context: Optional[str] = None,
                            additional_data: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Create a standardized error result dictionary.

        Args:
            error_message: The error message
            error_context: Optional context about where the error occurred
            additional_data: Optional additional data to include

        Returns:
            Standardized error result dictionary
        """
        result = {
            'success': False,
            'error': error_message,
            'timestamp': datetime.now().isoformat(),
            'session_key': None,
            'search_metadata': {}
        }

        if error_context:
            result['error_context'] = error_context

        if additional_data:
            result.update(additional_data)

        return result

    @staticmethod
    def create_success_result(data: Dict[str, Any]) -> Dict[str, Any]:
        """Create a standardized success result dictionary."""
        result = {
            'success': True,
            'timestamp': datetime.now().isoformat(),
        }
        result.update(data)
        return result

