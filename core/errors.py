"""
Error kinds raised by the pipeline.

Low-level calls raise these; the per-site and per-job boundaries convert them
into tagged results with ``to_result()`` so one failure never unwinds a batch.
"""
from typing import Any, Dict, Optional


class PipelineError(Exception):
    code = "pipeline_error"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_result(self) -> Dict[str, Any]:
        return {
            "success": False,
            "error": {
                "code": self.code,
                "message": self.message,
                "details": self.details,
            },
        }


class FetchError(PipelineError):
    """Upstream service unreachable or answered with a non-success status."""
    code = "fetch_error"


class NotFoundError(PipelineError):
    """A site code could not be resolved to a registered site."""
    code = "not_found"


class ConfigurationError(PipelineError):
    """Invalid scheduler settings."""
    code = "configuration_error"


class ParseError(PipelineError):
    """Malformed statistics response."""
    code = "parse_error"


def error_result(code: str, message: str, details: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Tagged failure result for errors that are not PipelineError instances."""
    return {
        "success": False,
        "error": {"code": code, "message": message, "details": details},
    }
