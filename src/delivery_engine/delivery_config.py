"""Loading of ``.delivery/config.json`` across both schema generations.

Projects still carry the legacy (v1) layout where ``build_cookbook`` is a
single string. Both layouts are normalized to :class:`ProjectConfig` at load
time, and the build cookbook source is decided once, as a
:data:`BuildCookbookSpec` variant, right after that.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path, PurePosixPath
from typing import Any, ClassVar, Union

from pydantic import ValidationError

from delivery_engine.errors import DeliveryError, ErrorKind
from delivery_engine.file_io import atomic_write_text
from delivery_engine.schemas import ProjectConfig, ProjectConfigV1

logger = logging.getLogger(__name__)

CONFIG_DIR = ".delivery"
CONFIG_FILE = "config.json"
CONFIG_RELATIVE_PATH = Path(CONFIG_DIR) / CONFIG_FILE

DELIVERY_TRUCK_GIT = "https://github.com/opscode-cookbooks/delivery-truck.git"
_COOKBOOK_SKIP_PHASES = ["smoke", "security", "quality"]


class ProjectConfigVersion(str, Enum):
    """Schema generation a config document was read as."""

    V1 = "1"
    V2 = "2"


# ---------------------------------------------------------------------------
# Build cookbook sources
# ---------------------------------------------------------------------------


class BuildCookbookLocation(str, Enum):
    LOCAL = "local"
    GIT = "git"
    SUPERMARKET = "supermarket"
    DELIVERY = "delivery"
    CHEF_SERVER = "chef_server"


@dataclass(frozen=True, slots=True)
class LocalCookbook:
    """Cookbook living inside the project repository at ``path``."""

    location: ClassVar[BuildCookbookLocation] = BuildCookbookLocation.LOCAL
    name: str
    path: str


@dataclass(frozen=True, slots=True)
class GitCookbook:
    location: ClassVar[BuildCookbookLocation] = BuildCookbookLocation.GIT
    name: str
    url: str
    branch: str = "master"


@dataclass(frozen=True, slots=True)
class SupermarketCookbook:
    location: ClassVar[BuildCookbookLocation] = BuildCookbookLocation.SUPERMARKET
    name: str


@dataclass(frozen=True, slots=True)
class ChefServerCookbook:
    location: ClassVar[BuildCookbookLocation] = BuildCookbookLocation.CHEF_SERVER
    name: str


@dataclass(frozen=True, slots=True)
class DeliveryCookbook:
    """Cookbook hosted as a project on the delivery server itself."""

    location: ClassVar[BuildCookbookLocation] = BuildCookbookLocation.DELIVERY
    name: str
    enterprise: str
    organization: str


BuildCookbookSpec = Union[
    LocalCookbook, GitCookbook, SupermarketCookbook, ChefServerCookbook, DeliveryCookbook
]


def build_cookbook_spec(config: ProjectConfig) -> BuildCookbookSpec:
    """Decide where the build cookbook comes from.

    Keys are checked in a fixed order (path, git, supermarket, enterprise,
    server); the first one present wins even if others are also set.
    """
    source = config.build_cookbook
    if "path" in source:
        return LocalCookbook(
            name=config.build_cookbook_name(),
            path=config.build_cookbook_get("path"),
        )
    if "git" in source:
        branch = config.build_cookbook_get("branch") if "branch" in source else "master"
        return GitCookbook(
            name=config.build_cookbook_name(),
            url=config.build_cookbook_get("git"),
            branch=branch,
        )
    if "supermarket" in source:
        return SupermarketCookbook(name=config.build_cookbook_name())
    if "enterprise" in source:
        return DeliveryCookbook(
            name=config.build_cookbook_name(),
            enterprise=config.build_cookbook_get("enterprise"),
            organization=config.build_cookbook_get("organization"),
        )
    if "server" in source:
        return ChefServerCookbook(name=config.build_cookbook_name())
    raise DeliveryError(
        ErrorKind.NO_VALID_BUILD_COOKBOOK,
        f"build_cookbook has no recognized source key: {sorted(source)}",
    )


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------


def find_config_file(start: str | Path) -> Path:
    """Walk up from *start* until ``.delivery/config.json`` is found."""
    current = Path(start).resolve()
    for directory in (current, *current.parents):
        candidate = directory / CONFIG_RELATIVE_PATH
        if candidate.is_file():
            logger.debug("Found project config at %s", candidate)
            return candidate
    raise DeliveryError(
        ErrorKind.MISSING_PROJECT_CONFIG,
        f"no {CONFIG_RELATIVE_PATH.as_posix()} found from {current} upwards",
    )


def _read_config_text(path: Path, *, kind: ErrorKind = ErrorKind.DELIVERY_CONFIG_PARSE) -> str:
    """Read *path* as UTF-8; undecodable bytes raise ``DeliveryError(kind)``."""
    try:
        return path.read_text(encoding="utf-8")
    except UnicodeDecodeError as exc:
        raise DeliveryError(kind, f"{path}: not valid UTF-8: {exc}") from exc
    except OSError as exc:
        raise DeliveryError(ErrorKind.IO_ERROR, f"{path}: {exc}") from exc


def convert_v1(legacy: ProjectConfigV1) -> ProjectConfig:
    """Normalize a legacy config to the canonical shape."""
    cookbook = legacy.build_cookbook
    if "/" in cookbook or "\\" in cookbook:
        build_cookbook = {"name": PurePosixPath(cookbook.replace("\\", "/")).name, "path": cookbook}
    else:
        build_cookbook = {"name": cookbook, "server": "true"}
    return ProjectConfig(
        version=legacy.version,
        build_cookbook=build_cookbook,
        skip_phases=legacy.skip_phases,
        build_nodes=legacy.build_nodes,
        **(legacy.model_extra or {}),
    )


def parse_config(text: str) -> tuple[ProjectConfig, ProjectConfigVersion]:
    """Parse a config document, trying the canonical layout first."""
    try:
        return ProjectConfig.model_validate_json(text), ProjectConfigVersion.V2
    except ValidationError as exc:
        v2_error = exc

    try:
        legacy = ProjectConfigV1.model_validate_json(text)
    except ValidationError as v1_error:
        raise DeliveryError(
            ErrorKind.DELIVERY_CONFIG_PARSE,
            f"as v2: {v2_error}\nas v1: {v1_error}",
        ) from v1_error

    logger.info("Read legacy v1 project config; converting to v2 layout")
    try:
        converted = convert_v1(legacy)
    except ValidationError as exc:
        # Extra v1 keys can collide with typed v2 fields.
        raise DeliveryError(
            ErrorKind.DELIVERY_CONFIG_PARSE,
            f"as v2: {v2_error}\nas v1 (converted): {exc}",
        ) from exc
    return converted, ProjectConfigVersion.V1


def load_config(project_root: str | Path) -> ProjectConfig:
    """Load and normalize the project config found at or above *project_root*."""
    config, _ = parse_config(_read_config_text(find_config_file(project_root)))
    return config


def load_raw_config(project_root: str | Path) -> dict[str, Any]:
    """Return the config document as plain JSON, with no schema applied."""
    path = find_config_file(project_root)
    try:
        raw = json.loads(_read_config_text(path, kind=ErrorKind.CONFIG_PARSE))
    except json.JSONDecodeError as exc:
        raise DeliveryError(ErrorKind.CONFIG_PARSE, f"{path}: {exc}") from exc
    if not isinstance(raw, dict):
        raise DeliveryError(ErrorKind.CONFIG_PARSE, f"{path}: expected a JSON object")
    return raw


def validate_config_file(project_root: str | Path) -> bool:
    """Return True when the config loads and names a usable build cookbook."""
    build_cookbook_spec(load_config(project_root))
    return True


# ---------------------------------------------------------------------------
# Generating a new config
# ---------------------------------------------------------------------------


def detect_project_type(project_root: str | Path) -> str:
    return "cookbook" if (Path(project_root) / "metadata.rb").is_file() else "other"


def default_config(project_type: str = "other") -> ProjectConfig:
    """Starter config for a project that has none yet."""
    if project_type == "cookbook":
        return ProjectConfig(
            version="2",
            build_cookbook={
                "name": "delivery-truck",
                "git": DELIVERY_TRUCK_GIT,
                "branch": "master",
            },
            skip_phases=list(_COOKBOOK_SKIP_PHASES),
        )
    return ProjectConfig(
        version="2",
        build_cookbook={
            "name": "<your build cookbook name>",
            "path": "<relative path from project root>",
        },
        skip_phases=[],
    )


def write_config(project_root: str | Path, config: ProjectConfig) -> Path | None:
    """Write *config* under *project_root*; an existing file is left untouched.

    Returns the written path, or ``None`` when a config was already present.
    """
    path = Path(project_root) / CONFIG_RELATIVE_PATH
    if path.is_file():
        logger.debug("Project config already exists at %s; skipping", path)
        return None
    payload = json.dumps(config.to_document(), indent=2) + "\n"
    try:
        atomic_write_text(path, payload)
    except OSError as exc:
        raise DeliveryError(ErrorKind.IO_ERROR, f"{path}: {exc}") from exc
    logger.info("Wrote project config to %s", path)
    return path
