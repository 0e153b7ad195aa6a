"""``vendor.toml`` loading and validation."""

from __future__ import annotations

import re
import sys
from collections.abc import Iterable
from pathlib import Path

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from vendorkit.exceptions import ConfigError
from vendorkit.fetcher.github import parse_repo_url
from vendorkit.models import DownloadSource, LibrarySpec

DEFAULT_CONFIG = "vendor.toml"
DEFAULT_MANIFEST = "vendor-manifest.json"

_CONSTANT_PATH_RE = re.compile(r"^[A-Z]\w*(?:::[A-Z]\w*)*$")


class DownloadConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    git: str | None = None
    github: str | None = None

    @field_validator("github")
    @classmethod
    def _github_repo(cls, v: str | None) -> str | None:
        if v is not None:
            parse_repo_url(v)
        return v

    @model_validator(mode="after")
    def _exactly_one(self) -> DownloadConfig:
        if (self.git is None) == (self.github is None):
            raise ValueError("download needs exactly one of 'git' or 'github'")
        return self

    def to_source(self) -> DownloadSource:
        if self.github is not None:
            return DownloadSource("github", self.github)
        return DownloadSource("git", self.git)  # type: ignore[arg-type]


class LibraryConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    name: str
    version: str
    download: DownloadConfig
    namespace: str
    prefix: str
    destination: str
    license: str | None = None
    source_dir: str = "lib"
    require_entrypoint: str | None = None
    dependencies: list[LibraryConfig] = Field(default_factory=list, alias="dependency")

    @field_validator("download", mode="before")
    @classmethod
    def _plain_url_is_git(cls, v: object) -> object:
        return {"git": v} if isinstance(v, str) else v

    @field_validator("name", "version", "destination", mode="before")
    @classmethod
    def _strip_required(cls, v: object) -> object:
        if isinstance(v, str):
            v = v.strip()
            if not v:
                raise ValueError("must not be empty")
        return v

    @field_validator("namespace", "prefix")
    @classmethod
    def _constant_path(cls, v: str) -> str:
        if not _CONSTANT_PATH_RE.match(v):
            raise ValueError(f"'{v}' is not a constant path like 'Foo' or 'Foo::Bar'")
        return v

    def to_spec(self) -> LibrarySpec:
        builder = (
            LibrarySpec.builder(self.name)
            .version(self.version)
            .download(self.download.to_source())
            .namespace(self.namespace)
            .prefix(self.prefix)
            .destination(self.destination)
            .license(self.license)
            .source_dir(self.source_dir)
        )
        if self.require_entrypoint:
            builder.require_entrypoint(self.require_entrypoint)
        for dep in self.dependencies:
            builder.dependency(dep.to_spec())
        return builder.build()


LibraryConfig.model_rebuild()


class VendorConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    manifest: str = DEFAULT_MANIFEST
    libraries: list[LibraryConfig] = Field(default_factory=list, alias="library")

    def specs(self) -> list[LibrarySpec]:
        return [library.to_spec() for library in self.libraries]

    def select(self, names: Iterable[str]) -> list[LibrarySpec]:
        """Top-level specs named in *names*, in declaration order; empty selects all."""
        wanted = list(names)
        if not wanted:
            return self.specs()
        known = {library.name for library in self.libraries}
        unknown = [name for name in wanted if name not in known]
        if unknown:
            raise ConfigError(
                f"unknown librar{'y' if len(unknown) == 1 else 'ies'}: {', '.join(unknown)}; "
                f"declared: {', '.join(sorted(known)) or 'none'}"
            )
        return [library.to_spec() for library in self.libraries if library.name in wanted]


def parse_config(text: str, *, source: str = DEFAULT_CONFIG) -> VendorConfig:
    try:
        data = tomllib.loads(text)
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"{source} is not valid TOML: {exc}") from exc
    try:
        return VendorConfig.model_validate(data)
    except ValidationError as exc:
        raise ConfigError(f"{source} is invalid: {exc}") from exc


def load_config(path: Path) -> VendorConfig:
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        raise ConfigError(f"config file {path} not found") from None
    return parse_config(text, source=str(path))
