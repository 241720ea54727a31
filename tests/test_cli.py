from __future__ import annotations

import signal
import subprocess
import sys
import time
from collections.abc import Callable
from pathlib import Path

import pytest
import yaml

from tests.conftest import run_cli

Script = Callable[[str, str], Path]

CODE = "@startuml\nAlice -> Bob: hello\n@enduml\n"


@pytest.fixture(autouse=True)
def isolated(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("PUMLBRIDGE_CONFIG", raising=False)
    monkeypatch.setenv("COLUMNS", "1000")


@pytest.fixture
def config_file(tmp_path: Path, script: Script) -> Path:
    java = script(
        "java",
        f"""
        [ "$3" = "-version" ] && {{ echo "PlantUML version 1.2024.3 (Sat Feb 10 2024)"; exit 0; }}
        echo "$@" > {tmp_path / "args"}
        cat
        """,
    )
    dot = script("dot", 'echo "dot - graphviz version 2.43.0 (0)" >&2')

    path = tmp_path / "pumlbridge.yaml"
    path.write_text(
        yaml.safe_dump(
            {
                "monitor": {"grace_period": 0.1},
                "plantuml": {
                    "java": str(java),
                    "jar": str(tmp_path / "plantuml.jar"),
                    "graphviz_dot": str(dot),
                },
            }
        )
    )

    return path


def test_config_shows_defaults_without_a_file() -> None:
    result = run_cli("config")

    assert result.exit_code == 0
    assert '"grace_period": 2' in result.output
    assert '"filter": "*.puml"' in result.output


def test_config_is_found_in_working_directory(config_file: Path) -> None:
    result = run_cli("config")

    assert result.exit_code == 0
    assert '"grace_period": 0.1' in result.output
    assert str(config_file.parent / "bin" / "java") in result.output


def test_config_is_found_in_parent_directory(config_file: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    nested = config_file.parent / "a" / "b"
    nested.mkdir(parents=True)
    monkeypatch.chdir(nested)

    result = run_cli("config")

    assert '"grace_period": 0.1' in result.output


def test_config_search_stops_at_repository_root(config_file: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    repo = config_file.parent / "repo"
    (repo / ".git").mkdir(parents=True)
    monkeypatch.chdir(repo)

    result = run_cli("config")

    assert '"grace_period": 2' in result.output


def test_config_from_environment(config_file: Path, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    other = tmp_path / "other.yaml"
    other.write_text("monitor:\n  filter: '*.plantuml'\n")
    monkeypatch.setenv("PUMLBRIDGE_CONFIG", str(other))

    result = run_cli("config")

    assert '"filter": "*.plantuml"' in result.output


def test_invalid_config_is_reported(tmp_path: Path) -> None:
    path = tmp_path / "broken.yaml"
    path.write_text("monitor:\n  grace_period: -1\n")

    result = run_cli("config", "--config", str(path))

    assert result.exit_code == 1
    assert "ERROR monitor.grace_period" in result.output


def test_non_yaml_config_is_rejected(tmp_path: Path) -> None:
    path = tmp_path / "config.json"
    path.write_text("{}")

    result = run_cli("config", "--config", str(path))

    assert result.exit_code == 1
    assert "only YAML" in result.output


def test_render_writes_image(config_file: Path, tmp_path: Path) -> None:
    diagram = tmp_path / "sequence.puml"
    diagram.write_text(CODE)

    result = run_cli("render", str(diagram))

    assert result.exit_code == 0
    assert (tmp_path / "sequence.png").read_text() == CODE
    assert f"Wrote {tmp_path / 'sequence.png'}" in result.output
    assert "-tsvg" not in (tmp_path / "args").read_text()


def test_render_to_svg_output(config_file: Path, tmp_path: Path) -> None:
    diagram = tmp_path / "sequence.puml"
    diagram.write_text(CODE)

    result = run_cli("render", str(diagram), "--output", str(tmp_path / "out.svg"))

    assert result.exit_code == 0
    assert (tmp_path / "out.svg").exists()
    assert "-tsvg" in (tmp_path / "args").read_text()


def test_render_with_explicit_format(config_file: Path, tmp_path: Path) -> None:
    diagram = tmp_path / "sequence.puml"
    diagram.write_text(CODE)

    result = run_cli("render", str(diagram), "--format", "svg")

    assert result.exit_code == 0
    assert "-tsvg" in (tmp_path / "args").read_text()


def test_render_reports_diagram_errors(tmp_path: Path, script: Script) -> None:
    java = script(
        "java",
        r"""
        cat > /dev/null
        printf 'ERROR\n2\nSyntax Error?\n' >&2
        """,
    )
    config = tmp_path / "errors.yaml"
    config.write_text(yaml.safe_dump({"plantuml": {"java": str(java)}}))
    diagram = tmp_path / "broken.puml"
    diagram.write_text("@startuml\nnonsense\n@enduml\n")

    result = run_cli("render", str(diagram), "--config", str(config))

    assert result.exit_code == 1
    assert "ERROR line 2: Syntax Error?" in result.output
    assert not (tmp_path / "broken.png").exists()


def test_render_reports_missing_java(tmp_path: Path) -> None:
    config = tmp_path / "missing.yaml"
    config.write_text(yaml.safe_dump({"plantuml": {"java": str(tmp_path / "no-java")}}))
    diagram = tmp_path / "sequence.puml"
    diagram.write_text(CODE)

    result = run_cli("render", str(diagram), "--config", str(config))

    assert result.exit_code == 1
    assert "Failed to start" in result.output


def test_render_rejects_non_diagrams(config_file: Path, tmp_path: Path) -> None:
    notes = tmp_path / "notes.puml"
    notes.write_text("not a diagram\n")

    result = run_cli("render", str(notes))

    assert result.exit_code == 1
    assert "does not contain a PlantUML diagram" in result.output


def test_version(config_file: Path) -> None:
    result = run_cli("version")

    assert result.exit_code == 0
    assert "PlantUML 1.2024.3" in result.output
    assert "GraphViz 2.43.0" in result.output


def test_version_reports_missing_tools(tmp_path: Path) -> None:
    config = tmp_path / "missing.yaml"
    config.write_text(yaml.safe_dump({"plantuml": {"java": str(tmp_path / "no-java")}}))

    result = run_cli("version", "--config", str(config))

    assert result.exit_code == 1


def test_watch_requires_existing_directory(tmp_path: Path) -> None:
    result = run_cli("watch", str(tmp_path / "missing"))

    assert result.exit_code != 0


def test_watch_compiles_until_interrupted(config_file: Path, tmp_path: Path) -> None:
    diagrams = tmp_path / "diagrams"
    diagrams.mkdir()
    (diagrams / "existing.puml").write_text(CODE)

    process = subprocess.Popen(
        [sys.executable, "-m", "pumlbridge", "watch", str(diagrams), "--initial", "--config", str(config_file)],
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        text=True,
    )

    try:
        deadline = time.monotonic() + 20
        while not (diagrams / "existing.png").exists() and time.monotonic() < deadline:
            time.sleep(0.05)

        assert (diagrams / "existing.png").read_text() == CODE

        (diagrams / "new.puml").write_text(CODE)
        while not (diagrams / "new.png").exists() and time.monotonic() < deadline:
            time.sleep(0.05)

        assert (diagrams / "new.png").read_text() == CODE
    finally:
        process.send_signal(signal.SIGINT)
        stdout, _ = process.communicate(timeout=10)

    assert process.returncode == 0, stdout
    assert "Finished in" in stdout
