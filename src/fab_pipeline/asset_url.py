"""
Asset URLs - Absolute asset locations and relative reference resolution.

Every asset the pipeline touches is addressed by an absolute URL: remote assets
keep their http(s) URL, local files are addressed with file:// URLs. References
found inside documents (textures in a model, models in an object document) may
be relative and are resolved against the URL of the document containing them.
"""

from __future__ import annotations

import posixpath
import re
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import unquote, urlsplit, urlunsplit
from urllib.request import url2pathname

from fab_pipeline.errors import AssetUrlError

_SCHEME_RE = re.compile(r"^[a-zA-Z][a-zA-Z0-9+.\-]*:")


def check_reference(reference: str) -> str:
    """Reject references no URL can be built from."""
    if not isinstance(reference, str):
        raise AssetUrlError(f"Asset reference must be a string, got {type(reference).__name__}")
    if not reference.strip():
        raise AssetUrlError("Asset reference is empty")
    if any(ord(c) < 32 for c in reference):
        raise AssetUrlError(f"Asset reference contains control characters: {reference!r}")
    try:
        urlsplit(reference)
    except ValueError as e:
        raise AssetUrlError(f"Malformed asset reference {reference!r}: {e}") from e
    return reference


def _normalize_path(path: str, reference: str) -> str:
    """Collapse `.` and `..` segments, refusing to climb above the root."""
    leading = path.startswith("/")
    trailing = path.endswith(("/", "/.", "/..")) or path in (".", "..")

    segments: list[str] = []
    for segment in path.split("/"):
        if segment in ("", "."):
            continue
        if segment == "..":
            if not segments:
                raise AssetUrlError(f"Reference {reference!r} escapes the root of its base url")
            segments.pop()
        else:
            segments.append(segment)

    result = "/".join(segments)
    if leading:
        result = "/" + result
    if trailing and segments:
        result += "/"
    return result or "/"


def is_absolute(reference: str) -> bool:
    """True for references carrying a scheme or an absolute local path."""
    return bool(_SCHEME_RE.match(reference)) or reference.startswith("/")


@dataclass(frozen=True)
class AbsAssetUrl:
    """An absolute asset URL (http, https or file)."""

    url: str

    @classmethod
    def parse(cls, value: str | Path) -> AbsAssetUrl:
        """
        Parse an absolute URL or an absolute local path.

        Raises:
            AssetUrlError: If the value is empty, malformed or relative
        """
        if isinstance(value, Path):
            return cls.from_file_path(value)
        value = check_reference(value)
        if value.startswith("/"):
            return cls.from_file_path(Path(value))
        if not _SCHEME_RE.match(value):
            raise AssetUrlError(f"Expected an absolute url, got relative reference {value!r}")
        return cls(value)

    @classmethod
    def from_file_path(cls, path: Path) -> AbsAssetUrl:
        url = path.resolve().as_uri()
        if path.is_dir() and not url.endswith("/"):
            url += "/"
        return cls(url)

    def __str__(self) -> str:
        return self.url

    @property
    def scheme(self) -> str:
        return urlsplit(self.url).scheme

    @property
    def path(self) -> str:
        return urlsplit(self.url).path

    @property
    def is_local(self) -> bool:
        return self.scheme == "file"

    @property
    def file_name(self) -> str:
        return unquote(posixpath.basename(self.path.rstrip("/")))

    @property
    def stem(self) -> str:
        return posixpath.splitext(self.file_name)[0]

    @property
    def extension(self) -> str:
        return posixpath.splitext(self.file_name)[1].lstrip(".").lower()

    def as_directory(self) -> AbsAssetUrl:
        if self.url.endswith("/"):
            return self
        parts = urlsplit(self.url)
        return AbsAssetUrl(urlunsplit((parts.scheme, parts.netloc, parts.path + "/", "", "")))

    def join(self, reference: str) -> AbsAssetUrl:
        """Resolve a reference the way a document at this URL would."""
        return resolve(reference, self)

    def push(self, reference: str) -> AbsAssetUrl:
        """Resolve a reference treating this URL as a directory."""
        return resolve(reference, self.as_directory())

    def parent(self) -> AbsAssetUrl:
        """The directory containing this URL (a directory URL's parent directory)."""
        parts = urlsplit(self.url)
        path = parts.path.rstrip("/")
        parent = path[: path.rfind("/") + 1] or "/"
        return AbsAssetUrl(urlunsplit((parts.scheme, parts.netloc, parent, "", "")))

    def relative_to(self, base: AbsAssetUrl) -> str | None:
        """Path of this URL below `base`, or None when it is not below it."""
        prefix = base.as_directory().url
        if not self.url.startswith(prefix):
            return None
        return unquote(self.url[len(prefix) :])

    def to_file_path(self) -> Path:
        if not self.is_local:
            raise AssetUrlError(f"Not a local file url: {self.url}")
        return Path(url2pathname(unquote(self.path)))


def resolve(reference: str, base: AbsAssetUrl | str) -> AbsAssetUrl:
    """
    Resolve an asset reference against the URL of the document containing it.

    Absolute references are returned unchanged. Relative references are joined
    against the directory of `base`.

    Raises:
        AssetUrlError: If the reference is empty, malformed or escapes the root
    """
    reference = check_reference(reference)
    if is_absolute(reference):
        return AbsAssetUrl.parse(reference)

    if isinstance(base, str):
        base = AbsAssetUrl.parse(base)

    base_parts = urlsplit(base.url)
    ref_parts = urlsplit(reference)

    if reference.startswith("//"):
        return AbsAssetUrl(urlunsplit((base_parts.scheme, *ref_parts[1:])))

    if ref_parts.path.startswith("/"):
        path = _normalize_path(ref_parts.path, reference)
    elif not ref_parts.path:
        path = base_parts.path
    else:
        base_dir = base_parts.path[: base_parts.path.rfind("/") + 1] or "/"
        path = _normalize_path(base_dir + ref_parts.path, reference)

    query = ref_parts.query if (ref_parts.path or ref_parts.query) else base_parts.query
    return AbsAssetUrl(
        urlunsplit((base_parts.scheme, base_parts.netloc, path, query, ref_parts.fragment))
    )
