"""Language runtime registry.

The registry is a closed mapping from a language id to an immutable
``RuntimeDescriptor``. It is built once from ``RunnerSettings`` and is read-only
afterwards, so concurrent requests may resolve against it without locking.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Iterable, Mapping

from .config import RunnerSettings
from .errors import ConfigurationError, UnsupportedLanguage

SOURCE_PLACEHOLDER = "{source}"
DESCRIPTOR_KEYS = frozenset({"executable", "source_filename", "args", "timeout_s", "aliases"})


@dataclass(frozen=True)
class RuntimeDescriptor:
    id: str
    executable: str
    source_filename: str
    args_template: tuple[str, ...] = (SOURCE_PLACEHOLDER,)
    default_timeout_s: float | None = None
    aliases: tuple[str, ...] = ()

    def build_args(self, source_path: str) -> list[str]:
        return [source_path if token == SOURCE_PLACEHOLDER else token for token in self.args_template]

    def describe(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "executable": self.executable,
            "source_filename": self.source_filename,
            "args": list(self.args_template),
            "timeout_s": self.default_timeout_s,
            "aliases": list(self.aliases),
        }


BUILTIN_RUNTIMES: dict[str, dict[str, Any]] = {
    "python": {"source_filename": "main.py", "aliases": ["py"]},
    "javascript": {"source_filename": "main.js", "aliases": ["js", "node"]},
}


def builtin_descriptors(settings: RunnerSettings) -> list[RuntimeDescriptor]:
    """Built-in languages with ``runtimes.python`` and ``runtimes.javascript`` overrides applied.

    The executable always comes from ``python_path``/``node_path``, which already
    resolved the environment over the config file.
    """
    executables = {"python": settings.python_path, "javascript": settings.node_path}
    descriptors = []
    for language_id, defaults in BUILTIN_RUNTIMES.items():
        overrides = settings.runtimes.get(language_id) or {}
        raw = {**defaults, **overrides, "executable": executables[language_id]}
        descriptors.append(descriptor_from_mapping(language_id, raw))
    return descriptors


def descriptor_from_mapping(language_id: str, raw: Mapping[str, Any]) -> RuntimeDescriptor:
    """Build a descriptor from a ``runtimes.<id>`` config entry."""
    unknown = sorted(str(key) for key in set(raw) - DESCRIPTOR_KEYS)
    if unknown:
        raise ConfigurationError(f"runtimes.{language_id} 含有不支援的設定：{', '.join(unknown)}")
    args = raw.get("args", [SOURCE_PLACEHOLDER])
    if isinstance(args, str) or not isinstance(args, Iterable):
        raise ConfigurationError(f"runtimes.{language_id}.args 必須是字串清單")
    timeout = raw.get("timeout_s")
    aliases = raw.get("aliases") or []
    try:
        return RuntimeDescriptor(
            id=language_id,
            executable=str(raw.get("executable") or ""),
            source_filename=str(raw.get("source_filename") or ""),
            args_template=tuple(str(item) for item in args),
            default_timeout_s=float(timeout) if timeout is not None else None,
            aliases=tuple(str(item) for item in aliases),
        )
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"runtimes.{language_id} 設定不合法：{exc}") from exc


def validate_descriptor(descriptor: RuntimeDescriptor) -> None:
    if not descriptor.id.strip():
        raise ConfigurationError("language id 不可為空")
    if not descriptor.executable.strip():
        raise ConfigurationError(f"{descriptor.id}: executable 不可為空")
    _validate_source_filename(descriptor.id, descriptor.source_filename)
    if SOURCE_PLACEHOLDER not in descriptor.args_template:
        raise ConfigurationError(f"{descriptor.id}: args 必須包含 {SOURCE_PLACEHOLDER}")
    if descriptor.default_timeout_s is not None and descriptor.default_timeout_s <= 0:
        raise ConfigurationError(f"{descriptor.id}: timeout_s 必須大於 0")


def _validate_source_filename(language_id: str, filename: str) -> None:
    if not filename or filename.strip() != filename:
        raise ConfigurationError(f"{language_id}: source_filename 格式不正確")
    if filename in {".", ".."} or "\x00" in filename:
        raise ConfigurationError(f"{language_id}: source_filename 格式不正確")
    separators = {"/", "\\"}
    if os.sep:
        separators.add(os.sep)
    if os.altsep:
        separators.add(os.altsep)
    if any(sep in filename for sep in separators):
        raise ConfigurationError(f"{language_id}: source_filename 不可包含路徑")


class RuntimeRegistry:
    def __init__(self, descriptors: Iterable[RuntimeDescriptor]) -> None:
        by_id: dict[str, RuntimeDescriptor] = {}
        lookup: dict[str, RuntimeDescriptor] = {}
        for descriptor in descriptors:
            validate_descriptor(descriptor)
            key = _normalize(descriptor.id)
            if key in by_id:
                raise ConfigurationError(f"language 重複註冊：{descriptor.id}")
            by_id[key] = descriptor
            for name in (descriptor.id, *descriptor.aliases):
                normalized = _normalize(name)
                existing = lookup.get(normalized)
                if existing is not None and existing is not descriptor:
                    raise ConfigurationError(f"language 名稱衝突：{name}")
                lookup[normalized] = descriptor
        if not by_id:
            raise ConfigurationError("至少需要一個 language runtime")
        self._descriptors = MappingProxyType(by_id)
        self._lookup = MappingProxyType(lookup)

    @classmethod
    def from_settings(cls, settings: RunnerSettings) -> "RuntimeRegistry":
        descriptors = builtin_descriptors(settings)
        descriptors.extend(
            descriptor_from_mapping(key, raw) for key, raw in settings.runtimes.items() if key not in BUILTIN_RUNTIMES
        )
        return cls(descriptors)

    def resolve(self, language_id: str) -> RuntimeDescriptor:
        descriptor = self._lookup.get(_normalize(language_id))
        if descriptor is None:
            raise UnsupportedLanguage(str(language_id))
        return descriptor

    def supported(self) -> list[str]:
        return sorted(descriptor.id for descriptor in self._descriptors.values())

    def describe(self) -> list[dict[str, Any]]:
        return [self._descriptors[key].describe() for key in sorted(self._descriptors)]

    def __contains__(self, language_id: object) -> bool:
        return isinstance(language_id, str) and _normalize(language_id) in self._lookup


def _normalize(language_id: str) -> str:
    return str(language_id or "").strip().lower()
