"""Attachment validation and provider-native content encoding."""

from __future__ import annotations

import base64
import io
import logging
import mimetypes
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal, Protocol, Union

from pydantic import BaseModel, Field
from pypdf import PdfReader
from pypdf.errors import PyPdfError

from llm_switchboard.errors import AttachmentError
from llm_switchboard.types import new_id

MB = 1024 * 1024

MAX_TOTAL_BYTES = 50 * MB
MAX_TOTAL_FILES = 10

_TEXTUAL_APPLICATION_TYPES = frozenset(
    {
        "application/json",
        "application/xml",
        "application/javascript",
        "application/x-javascript",
        "application/x-yaml",
        "application/yaml",
        "application/csv",
        "application/x-sh",
    }
)


class RawFile(Protocol):
    """Anything that can hand over a file's metadata and bytes."""

    @property
    def name(self) -> str: ...

    @property
    def mime_type(self) -> str: ...

    @property
    def size(self) -> int: ...

    def read(self) -> bytes: ...


@dataclass(frozen=True)
class FileData:
    """In-memory file."""

    name: str
    mime_type: str
    data: bytes = field(repr=False)

    @property
    def size(self) -> int:
        return len(self.data)

    def read(self) -> bytes:
        return self.data

    @classmethod
    def from_path(cls, path: str | Path, mime_type: str | None = None) -> FileData:
        path = Path(path)
        if mime_type is None:
            mime_type = mimetypes.guess_type(path.name)[0] or "application/octet-stream"
        return cls(name=path.name, mime_type=mime_type, data=path.read_bytes())


# -------------------------------------------------------------- classification


@dataclass(frozen=True)
class ImageContent:
    mime_type: str
    data: bytes = field(repr=False)

    @property
    def base64(self) -> str:
        return base64.b64encode(self.data).decode("ascii")


@dataclass(frozen=True)
class TextContent:
    text: str


@dataclass(frozen=True)
class Unsupported:
    reason: str


FileContent = Union[ImageContent, TextContent, Unsupported]


def is_textual(mime_type: str) -> bool:
    return mime_type.startswith("text/") or mime_type in _TEXTUAL_APPLICATION_TYPES


def classify(file: RawFile) -> FileContent:
    """Read ``file`` and decide how it can be sent to a model."""
    mime_type = file.mime_type.lower()
    if mime_type.startswith("image/"):
        return ImageContent(mime_type=mime_type, data=file.read())
    if is_textual(mime_type):
        try:
            return TextContent(file.read().decode("utf-8"))
        except UnicodeDecodeError:
            return Unsupported(f"{file.name} is not valid UTF-8 text")
    if mime_type == "application/pdf":
        return _pdf_text(file)
    return Unsupported(f"file type {mime_type} cannot be attached")


def _pdf_text(file: RawFile) -> FileContent:
    try:
        reader = PdfReader(io.BytesIO(file.read()))
        pages = []
        for page_num, page in enumerate(reader.pages, 1):
            page_text = (page.extract_text() or "").strip()
            if page_text:
                pages.append(f"## Page {page_num}\n{page_text}")
    except PyPdfError as exc:
        return Unsupported(f"{file.name} could not be read as PDF: {exc}")
    if not pages:
        return Unsupported(f"{file.name} has no extractable text")
    return TextContent("\n\n".join(pages))


# ---------------------------------------------------------------- provider rules


@dataclass(frozen=True)
class ProviderAttachmentLimits:
    max_file_size: int
    max_files: int
    supported_types: tuple[str, ...]

    def accepts(self, mime_type: str) -> bool:
        mime_type = mime_type.lower()
        # json, yaml and friends travel as text
        if mime_type in _TEXTUAL_APPLICATION_TYPES:
            mime_type = "text/plain"
        for pattern in self.supported_types:
            if pattern.endswith("/*"):
                if mime_type.startswith(pattern[:-1]):
                    return True
            elif mime_type == pattern:
                return True
        return False


@dataclass(frozen=True)
class AttachmentEncoder:
    """Builds one provider's content blocks."""

    image: Callable[[ImageContent], dict[str, Any]]
    text: Callable[[str], dict[str, Any]]
    # Gemini wants the media parts ahead of the prompt text.
    attachments_first: bool = False


def _text_block(text: str) -> dict[str, Any]:
    return {"type": "text", "text": text}


def _image_url_block(image: ImageContent) -> dict[str, Any]:
    return {
        "type": "image_url",
        "image_url": {"url": f"data:{image.mime_type};base64,{image.base64}", "detail": "auto"},
    }


def _base64_source_block(image: ImageContent) -> dict[str, Any]:
    return {
        "type": "image",
        "source": {"type": "base64", "media_type": image.mime_type, "data": image.base64},
    }


def _inline_data_block(image: ImageContent) -> dict[str, Any]:
    return {"inlineData": {"mimeType": image.mime_type, "data": image.base64}}


def _gemini_text_block(text: str) -> dict[str, Any]:
    return {"text": text}


OPENAI_STYLE = AttachmentEncoder(image=_image_url_block, text=_text_block)
ANTHROPIC_STYLE = AttachmentEncoder(image=_base64_source_block, text=_text_block)
GEMINI_STYLE = AttachmentEncoder(
    image=_inline_data_block, text=_gemini_text_block, attachments_first=True
)

DEFAULT_LIMITS: dict[str, ProviderAttachmentLimits] = {
    "openai": ProviderAttachmentLimits(20 * MB, 10, ("text/*", "image/*", "application/pdf")),
    "anthropic": ProviderAttachmentLimits(10 * MB, 5, ("text/*", "image/*", "application/pdf")),
    "gemini": ProviderAttachmentLimits(20 * MB, 10, ("text/*", "image/*")),
    "deepseek": ProviderAttachmentLimits(10 * MB, 5, ("text/*",)),
    "lmstudio": ProviderAttachmentLimits(10 * MB, 5, ("text/*", "image/*")),
}

DEFAULT_ENCODERS: dict[str, AttachmentEncoder] = {
    "openai": OPENAI_STYLE,
    "anthropic": ANTHROPIC_STYLE,
    "gemini": GEMINI_STYLE,
    "deepseek": OPENAI_STYLE,
    "lmstudio": OPENAI_STYLE,
}


# ------------------------------------------------------------------- results


@dataclass(frozen=True)
class FileValidation:
    name: str
    valid: bool
    error: str | None = None


@dataclass
class ValidationReport:
    provider_id: str
    results: list[FileValidation] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return all(r.valid for r in self.results)

    @property
    def failures(self) -> list[tuple[str, str]]:
        return [(r.name, r.error or "invalid") for r in self.results if not r.valid]


class AttachmentRef(BaseModel):
    """A processed attachment, already wrapped in its provider's envelope."""

    id: str = Field(default_factory=lambda: new_id("att"))
    name: str
    mime_type: str
    size: int
    kind: Literal["image", "text"]
    provider: str
    payload: dict[str, Any]
    valid: bool = True
    error: str | None = None


# ------------------------------------------------------------------- adapter


class AttachmentAdapter:
    """Validates raw files and turns them into provider-native content blocks."""

    _logger = logging.getLogger(__name__)

    def __init__(
        self,
        *,
        max_total_bytes: int = MAX_TOTAL_BYTES,
        max_total_files: int = MAX_TOTAL_FILES,
    ) -> None:
        self.max_total_bytes = max_total_bytes
        self.max_total_files = max_total_files
        self._limits = dict(DEFAULT_LIMITS)
        self._encoders = dict(DEFAULT_ENCODERS)

    def register_provider(
        self,
        provider_id: str,
        limits: ProviderAttachmentLimits,
        encoder: AttachmentEncoder = OPENAI_STYLE,
    ) -> None:
        self._limits[provider_id] = limits
        self._encoders[provider_id] = encoder

    def limits(self, provider_id: str) -> ProviderAttachmentLimits:
        try:
            return self._limits[provider_id]
        except KeyError as exc:
            raise AttachmentError(f"No attachment rules for provider '{provider_id}'.") from exc

    def check_global_limits(self, files: Sequence[RawFile]) -> None:
        """Reject oversized batches the same way for every provider."""
        if len(files) > self.max_total_files:
            raise AttachmentError(
                f"Too many attachments ({len(files)}); the maximum is {self.max_total_files}."
            )
        total = sum(f.size for f in files)
        if total > self.max_total_bytes:
            raise AttachmentError(
                f"Total attachment size ({total / MB:.1f}MB) exceeds limit "
                f"({self.max_total_bytes / MB:.0f}MB)."
            )

    def validate(self, files: Sequence[RawFile], provider_id: str) -> ValidationReport:
        """Check every file against the provider's limits; never reads content."""
        self.check_global_limits(files)
        limits = self.limits(provider_id)

        report = ValidationReport(provider_id=provider_id)
        for index, f in enumerate(files):
            error = None
            if not limits.accepts(f.mime_type):
                error = f"File type {f.mime_type} not supported by {provider_id}"
            elif f.size > limits.max_file_size:
                error = (
                    f"File size ({f.size / MB:.1f}MB) exceeds {provider_id} limit "
                    f"({limits.max_file_size / MB:.0f}MB)"
                )
            elif index >= limits.max_files:
                error = f"Too many files for {provider_id}; maximum is {limits.max_files}"
            report.results.append(FileValidation(name=f.name, valid=error is None, error=error))
        return report

    def process(self, files: Sequence[RawFile], provider_id: str) -> list[AttachmentRef]:
        """Validate and encode ``files``; any failure rejects the whole batch."""
        report = self.validate(files, provider_id)
        if not report.valid:
            raise AttachmentError(_summary(report.failures), report.failures)

        encoder = self._encoders[provider_id]
        refs: list[AttachmentRef] = []
        failures: list[tuple[str, str]] = []
        for f in files:
            content = classify(f)
            if isinstance(content, ImageContent):
                refs.append(self._ref(f, provider_id, "image", encoder.image(content)))
            elif isinstance(content, TextContent):
                refs.append(self._ref(f, provider_id, "text", encoder.text(content.text)))
            else:
                failures.append((f.name, content.reason))
        if failures:
            raise AttachmentError(_summary(failures), failures)

        self._logger.debug("Processed %d attachments for %s", len(refs), provider_id)
        return refs

    def format_for_provider(
        self,
        attachments: Sequence[AttachmentRef],
        provider_id: str,
        text: str | None = None,
    ) -> list[dict[str, Any]]:
        """Assemble the final content array in the provider's block order."""
        encoder = self._encoders.get(provider_id)
        if encoder is None:
            raise AttachmentError(f"No attachment rules for provider '{provider_id}'.")
        foreign = [a.name for a in attachments if a.provider != provider_id]
        if foreign:
            raise AttachmentError(
                f"Attachments encoded for another provider: {', '.join(foreign)}",
                [(name, f"not encoded for {provider_id}") for name in foreign],
            )

        blocks = [a.payload for a in attachments]
        if not text:
            return blocks
        if encoder.attachments_first:
            return [*blocks, encoder.text(text)]
        return [encoder.text(text), *blocks]

    @staticmethod
    def _ref(
        f: RawFile, provider_id: str, kind: Literal["image", "text"], payload: dict[str, Any]
    ) -> AttachmentRef:
        return AttachmentRef(
            name=f.name,
            mime_type=f.mime_type,
            size=f.size,
            kind=kind,
            provider=provider_id,
            payload=payload,
        )


def _summary(failures: list[tuple[str, str]]) -> str:
    return "; ".join(f"{name}: {reason}" for name, reason in failures)
