from __future__ import annotations

from enum import Enum
from pathlib import Path
from typing import Annotated

from identify.identify import tags_from_path
from pydantic import Field, field_validator

from pumlbridge.model import Model

CONFIG_FILE_NAMES = ("pumlbridge.yaml", "pumlbridge.yml")


class ImageFormat(Enum):
    PNG = "png"
    SVG = "svg"

    @classmethod
    def from_path(cls, path: Path) -> ImageFormat:
        return cls.SVG if path.suffix.lower() == ".svg" else cls.PNG


class MonitorSettings(Model):
    filter: Annotated[
        str,
        Field(
            min_length=1,
            description="Glob pattern matched against file names in the monitored directory.",
        ),
    ] = "*.puml"
    grace_period: Annotated[
        float,
        Field(
            ge=0,
            description="Seconds a file must stay quiet after being created or changed before it is announced.",
        ),
    ] = 2
    confirm_exists: Annotated[
        bool,
        Field(
            description="If enabled, a file that no longer exists when its grace period ends is not announced.",
        ),
    ] = True
    detect_renames: Annotated[
        bool,
        Field(
            description="If enabled, a removal and an addition in the same directory and batch are reported as a rename.",
        ),
    ] = True
    raw_debounce: Annotated[
        int,
        Field(
            ge=1,
            description="Milliseconds over which raw filesystem notifications are batched.",
        ),
    ] = 50
    raw_step: Annotated[
        int,
        Field(
            ge=1,
            description="Milliseconds to wait for further notifications once a batch has started.",
        ),
    ] = 50
    force_polling: Annotated[
        bool | None,
        Field(
            description="Force polling instead of native notifications. Left unset, the platform decides.",
        ),
    ] = None


class PlantUmlSettings(Model):
    java: Annotated[str, Field(min_length=1, description="The Java executable used to run PlantUML.")] = "java"
    jar: Annotated[Path, Field(description="The location of plantuml.jar.")] = Path("plantuml.jar")
    graphviz_dot: Annotated[
        Path,
        Field(description="The location of the GraphViz dot executable PlantUML uses for layout."),
    ] = Path("dot")
    image_format: Annotated[
        ImageFormat,
        Field(description="The image format used when a diagram does not name its own output file."),
    ] = ImageFormat.PNG
    version_pattern: Annotated[
        str,
        Field(description="Pattern with a 'version' group that extracts the PlantUML version."),
    ] = r"version (?P<version>[\d.]+(beta\d+)?)"
    graphviz_version_pattern: Annotated[
        str,
        Field(description="Pattern with a 'version' group that extracts the GraphViz version."),
    ] = r"version\s+(?P<version>[.\d]+)"

    @field_validator("version_pattern", "graphviz_version_pattern")
    @classmethod
    def has_version_group(cls, pattern: str) -> str:
        if "(?P<version>" not in pattern:
            raise ValueError("pattern must contain a named group 'version'")
        return pattern


class Config(Model):
    monitor: Annotated[
        MonitorSettings,
        Field(description="How the diagram directory is monitored."),
    ] = MonitorSettings()
    plantuml: Annotated[
        PlantUmlSettings,
        Field(description="How diagrams are compiled."),
    ] = PlantUmlSettings()

    @classmethod
    def from_file(cls, file: Path) -> Config:
        tags = tags_from_path(str(file))

        if "yaml" in tags:
            return cls.model_validate_yaml_file(file)
        else:
            raise NotImplementedError("Currently, only YAML files are supported.")
