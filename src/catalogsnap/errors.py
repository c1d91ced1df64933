"""Error taxonomy for the classify-and-query pipeline.

Every error carries the pipeline stage it was raised in and, where one
exists, the underlying cause. ``user_message`` is the text a client should
show; ``detail`` is for logs.
"""

from __future__ import annotations

from enum import StrEnum
from typing import ClassVar


class FailureKind(StrEnum):
    DECODE = "decode_error"
    INFERENCE = "inference_error"
    NO_MATCH = "no_match"
    FETCH = "fetch_error"
    SUPERSEDED = "superseded"


class PipelineError(Exception):
    """Base class for terminal failures of a single pipeline run."""

    kind: ClassVar[FailureKind]
    user_message: ClassVar[str]

    def __init__(self, detail: str, *, stage: str | None = None, cause: BaseException | None = None) -> None:
        super().__init__(detail)
        self.detail = detail
        self.stage = stage
        self.cause = cause

    def __str__(self) -> str:
        if self.stage is None:
            return self.detail
        return f"[{self.stage}] {self.detail}"


class DecodeError(PipelineError):
    kind = FailureKind.DECODE
    user_message = "The image could not be read."


class InferenceError(PipelineError):
    kind = FailureKind.INFERENCE
    user_message = "Unable to classify image."


class NoMatchError(PipelineError):
    kind = FailureKind.NO_MATCH
    user_message = "Couldn't recognize the image"


class NoClassificationError(NoMatchError):
    user_message = "Unable to identify product category"


class FetchError(PipelineError):
    kind = FailureKind.FETCH
    user_message = "Failed to load list of products!"


class SupersededError(PipelineError):
    kind = FailureKind.SUPERSEDED
    user_message = "A newer image was submitted for this session."


class ImageLoadError(Exception):
    """A product image could not be downloaded or decoded."""

    def __init__(self, url: str, cause: BaseException | None = None) -> None:
        super().__init__(f"Failed to load image {url}")
        self.url = url
        self.cause = cause
