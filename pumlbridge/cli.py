from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from time import monotonic
from typing import Optional

import typer.rich_utils as ru
from click.exceptions import Exit
from pydantic import ValidationError
from rich.console import Console
from rich.json import JSON
from rich.logging import RichHandler
from rich.panel import Panel
from rich.style import Style
from rich.text import Text
from typer import Argument, Option, Typer

from pumlbridge.config import CONFIG_FILE_NAMES, Config, ImageFormat
from pumlbridge.diagram import Diagram
from pumlbridge.errors import (
    MonitoringError,
    PlantUmlError,
    ProcessCancelledError,
    ProcessLaunchError,
)
from pumlbridge.monitor import DirectoryMonitor
from pumlbridge.pipeline import DiagramPipeline
from pumlbridge.plantuml import PlantUml
from pumlbridge.renderer import Renderer

ru.STYLE_HELPTEXT = ""

cli = Typer(pretty_exceptions_enable=False, no_args_is_help=True)

CONFIG_OPTION = Option(
    default=None,
    exists=True,
    readable=True,
    dir_okay=False,
    show_default=True,
    envvar="PUMLBRIDGE_CONFIG",
    help="The path to the configuration file. If omitted, pumlbridge.yaml is searched for in this directory and its parents.",
)
LOG_LEVEL_OPTION = Option(
    default="WARNING",
    help="The minimum level of log records to display.",
)


@cli.command()
def watch(
    directory: Path = Argument(
        ...,
        exists=True,
        file_okay=False,
        help="The directory of diagrams to watch.",
    ),
    config: Optional[Path] = CONFIG_OPTION,
    initial: bool = Option(
        default=False,
        help="If enabled, compile every existing diagram before waiting for changes.",
    ),
    log_level: str = LOG_LEVEL_OPTION,
) -> None:
    """Compile diagrams to images whenever they are created or saved."""
    start_time = monotonic()

    console = Console()
    setup_logging(console, log_level)

    parsed_config = load_config(config, console)

    directory = directory.absolute()
    renderer = Renderer(console=console, root=directory)
    pipeline = DiagramPipeline(
        monitor=DirectoryMonitor(settings=parsed_config.monitor),
        compiler=PlantUml(settings=parsed_config.plantuml),
        report=renderer.handle_message,
    )

    console.print(Text(f"Watching {directory} for {parsed_config.monitor.filter} files. Press Ctrl-C to stop."))

    try:
        asyncio.run(pipeline.run(directory, initial=initial))
    except KeyboardInterrupt:
        raise Exit(code=0)
    except MonitoringError as e:
        console.print(Text(str(e), style=Style(color="red")))
        raise Exit(code=1)
    finally:
        end_time = monotonic()

        console.print(Text(f"Finished in {end_time - start_time:.3f} seconds."))


@cli.command()
def render(
    file: Path = Argument(
        ...,
        exists=True,
        dir_okay=False,
        readable=True,
        help="The diagram file to compile.",
    ),
    config: Optional[Path] = CONFIG_OPTION,
    format: Optional[ImageFormat] = Option(
        default=None,
        case_sensitive=False,
        help="The image format. Defaults to the format of the file named by the diagram.",
    ),
    output: Optional[Path] = Option(
        default=None,
        dir_okay=False,
        help="Where to write the image. Defaults to the file named by the diagram.",
    ),
    log_level: str = LOG_LEVEL_OPTION,
) -> None:
    """Compile a single diagram file to an image."""
    console = Console()
    setup_logging(console, log_level)

    parsed_config = load_config(config, console)

    diagram = Diagram.read(file.absolute())
    if diagram is None:
        console.print(Text(f"{file} does not contain a PlantUML diagram", style=Style(color="red")))
        raise Exit(code=1)

    image_path = output or diagram.image_path
    image_format = format or (ImageFormat.from_path(output) if output else diagram.image_format)

    plantuml = PlantUml(settings=parsed_config.plantuml)
    try:
        image = asyncio.run(plantuml.compile_to_image(diagram.content, image_format))
    except PlantUmlError as e:
        for error in e.errors:
            console.print(Text(f"ERROR {error}", style=Style(color="red")))
        if not e.errors:
            console.print(Text(e.diagnostics.strip(), style=Style(color="red")))
        raise Exit(code=1)
    except (ProcessLaunchError, ProcessCancelledError) as e:
        console.print(Text(str(e), style=Style(color="red")))
        raise Exit(code=1)

    image_path.write_bytes(image)
    console.print(Text(f"Wrote {image_path}"))


@cli.command()
def version(
    config: Optional[Path] = CONFIG_OPTION,
    log_level: str = LOG_LEVEL_OPTION,
) -> None:
    """Show the versions of PlantUML and GraphViz in use."""
    console = Console()
    setup_logging(console, log_level)

    plantuml = PlantUml(settings=load_config(config, console).plantuml)

    async def versions() -> tuple[str, str]:
        return await plantuml.version(), await plantuml.graphviz_version()

    try:
        plantuml_version, graphviz_version = asyncio.run(versions())
    except (PlantUmlError, ProcessLaunchError, ProcessCancelledError) as e:
        console.print(Text(str(e).strip(), style=Style(color="red")))
        raise Exit(code=1)

    console.print(Text(f"PlantUML {plantuml_version}"))
    console.print(Text(f"GraphViz {graphviz_version}"))


@cli.command(name="config")
def show_config(
    config: Optional[Path] = CONFIG_OPTION,
) -> None:
    """Show the resolved configuration."""
    console = Console()

    parsed_config = load_config(config, console)

    console.print(
        Panel(
            JSON(parsed_config.model_dump_json()),
            title="Configuration",
            title_align="left",
        )
    )


def setup_logging(console: Console, level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, show_path=False)],
        force=True,
    )


def load_config(config: Path | None, console: Console) -> Config:
    config = config or find_config_file()
    if config is None:
        return Config()

    try:
        return Config.from_file(config)
    except ValidationError as e:
        for err in e.errors():
            loc = ".".join(map(str, err["loc"]))
            msg = err["msg"]
            console.print(f"[red]ERROR[/red] {loc} -> {msg}")
        raise Exit(code=1)
    except NotImplementedError as e:
        console.print(Text(str(e), style=Style(color="red")))
        raise Exit(code=1)


def find_config_file() -> Path | None:
    cwd = Path.cwd()
    for dir in (cwd, *cwd.parents):
        contents = set(dir.iterdir())
        for name in CONFIG_FILE_NAMES:
            if (path := dir / name) in contents:
                return path

        if dir / ".git" in contents:
            break

    return None


if __name__ == "__main__":
    cli()
