"""Error taxonomy for the conversion engine.

Every error carries the HTTP status it maps to and a message that is safe to
return to a client. Diagnostic text captured from the external tools stays on
the exception (``diagnostics``) and is only ever logged.
"""


class ConversionError(Exception):
    """Base exception for all conversion errors."""

    status_code = 500
    default_message = "An unexpected error occurred. Please try again."

    def __init__(self, message=None, *, diagnostics=None):
        self.message = message or self.default_message
        self.diagnostics = diagnostics
        super().__init__(self.message)


class InputError(ConversionError):
    """Malformed URL or unsupported output format."""

    status_code = 400
    default_message = "Invalid request"


class ToolMissingError(ConversionError):
    """An external binary could not be launched."""

    status_code = 500

    def __init__(self, tool, message=None):
        self.tool = tool
        super().__init__(message or f"{tool} not found. Please install {tool} first.")


class UpstreamFailure(ConversionError):
    """The fetch stage exited non-zero (private, removed, region-locked, network)."""

    status_code = 400
    default_message = "Failed to fetch video. Please check the URL and try again."


class PipelineFailure(ConversionError):
    """The transcode stage exited non-zero."""

    status_code = 500
    default_message = "Conversion failed"


class MetadataParseError(ConversionError):
    """The fetch tool's metadata dump was not a parseable record."""

    status_code = 500
    default_message = "Failed to parse video info"


class ServerBusyError(ConversionError):
    """No pipeline slot became free within the admission timeout."""

    status_code = 503
    default_message = "Server is busy. Please try again shortly."


class ConversionCancelled(ConversionError):
    """The pipeline was terminated before it finished."""

    status_code = 409
    default_message = "Conversion cancelled"


class JobStateError(ConversionError):
    """The job is not in a state that allows the requested operation."""

    status_code = 409
    default_message = "Conversion is not in progress"
