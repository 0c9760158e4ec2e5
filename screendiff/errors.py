from __future__ import annotations


class ScreenDiffError(Exception):
    """Base class for errors that carry a message fit for the end user."""

    user_message = "Something went wrong. Please try again."

    def __init__(self, message: str | None = None):
        super().__init__(message or self.user_message)


class ValidationError(ScreenDiffError):
    user_message = "The request is missing required data."


class StorageFullError(ScreenDiffError):
    user_message = (
        "Storage quota exceeded. Try removing some old comparisons or timelines "
        "from the history to free up space."
    )


class CompressionError(ScreenDiffError):
    user_message = "Failed to compress the image. It might be too large."


class ImageDecodeError(CompressionError):
    user_message = "The image could not be read. It might be corrupted or in an unsupported format."


class UpstreamError(ScreenDiffError):
    user_message = "Failed to analyze the screenshots."


class UpstreamTimeoutError(UpstreamError):
    user_message = "AI analysis took too long. Please try again with a smaller image."


class UpstreamUnavailableError(UpstreamError):
    user_message = "AI service is temporarily unavailable. Please try again."


class UpstreamBadInputError(UpstreamError):
    user_message = "Invalid image format. Please use a valid image file."


class UpstreamResponseError(UpstreamError):
    user_message = "AI service returned an unexpected response. Please try again."


class OperationCancelled(ScreenDiffError):
    user_message = "The operation was cancelled."


def user_message(exc: BaseException) -> str:
    if isinstance(exc, (ValidationError, OperationCancelled)):
        return str(exc)
    if isinstance(exc, ScreenDiffError):
        return type(exc).user_message
    return ScreenDiffError.user_message
