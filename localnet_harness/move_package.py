"""Move package manifests, builds and publishes for isolated test contexts.

Manifest edits are targeted line edits: only the ``[environments]`` entry or
the ``[published.<network>]`` section in question changes, every other byte
of the file is preserved.
"""

from __future__ import annotations

import json
import logging
import re
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Mapping

from .errors import LocalnetConfigurationError, SuiCliError
from .logging_utils import move_debug, move_debug_enabled
from .sui_cli import run_sui_command

logger = logging.getLogger(__name__)

LOCALNET_ENVIRONMENT = "localnet"
DEFAULT_PUBLISH_GAS_BUDGET = 500_000_000

_ANY_SECTION_RE = re.compile(r"^\s*\[[^\]]+\]\s*(#.*)?$")
_ENVIRONMENTS_HEADER_RE = re.compile(r"^\s*\[environments\]\s*(#.*)?$")


def _line_ending(contents: str) -> str:
    return "\r\n" if "\r\n" in contents else "\n"


def _section_header_re(name: str) -> re.Pattern[str]:
    return re.compile(rf"^\s*\[{re.escape(name)}\]\s*(#.*)?$")


def find_toml_section(contents: str, name: str) -> tuple[int, int] | None:
    """Return ``(start, end)`` offsets of section ``name`` including its header."""

    header = _section_header_re(name)
    offset = 0
    start: int | None = None
    for line in contents.splitlines(keepends=True):
        bare = line.rstrip("\r\n")
        if start is None:
            if header.match(bare):
                start = offset
        elif _ANY_SECTION_RE.match(bare):
            return start, offset
        offset += len(line)
    if start is None:
        return None
    return start, len(contents)


def extract_environment_block(contents: str) -> str:
    span = find_toml_section(contents, "environments")
    if span is None:
        return "missing [environments] section"
    return contents[span[0]:span[1]].rstrip()


def _entry_re(environment: str) -> re.Pattern[str]:
    return re.compile(rf'^\s*{re.escape(environment)}\s*=\s*"[^"]*"', re.MULTILINE)


def ensure_environment_entry(contents: str, environment: str, chain_id: str) -> str:
    """Return ``contents`` with ``environment = "<chain_id>"`` under ``[environments]``.

    An existing entry for ``environment`` is left untouched.
    """

    if _entry_re(environment).search(contents):
        return contents

    newline = _line_ending(contents)
    entry = f'{environment} = "{chain_id}"'
    lines = contents.splitlines(keepends=True)
    for index, line in enumerate(lines):
        if _ENVIRONMENTS_HEADER_RE.match(line.rstrip("\r\n")):
            if not line.endswith("\n"):
                lines[index] = line + newline
            lines.insert(index + 1, entry + newline)
            return "".join(lines)

    suffix = "" if not contents or contents.endswith("\n") else newline
    return f"{contents}{suffix}{newline}[environments]{newline}{entry}{newline}"


def list_move_toml_files(root: Path | str) -> list[Path]:
    return sorted(path for path in Path(root).rglob("Move.toml") if path.is_file())


def ensure_environment_entry_file(move_toml: Path, environment: str, chain_id: str) -> bool:
    contents = move_toml.read_text(encoding="utf-8")
    updated = ensure_environment_entry(contents, environment, chain_id)
    if updated == contents:
        return False
    move_toml.write_text(updated, encoding="utf-8")
    return True


def register_localnet_environment(
    root: Path | str,
    chain_id: str,
    environment: str = LOCALNET_ENVIRONMENT,
) -> list[Path]:
    """Register ``chain_id`` in every ``Move.toml`` below ``root``; returns updated files."""

    updated = []
    for move_toml in list_move_toml_files(root):
        if ensure_environment_entry_file(move_toml, environment, chain_id):
            updated.append(move_toml)
    return updated


def remove_toml_section(contents: str, name: str) -> str:
    span = find_toml_section(contents, name)
    if span is None:
        return contents

    newline = _line_ending(contents)
    keep_trailing = contents.endswith("\n")
    before = contents[: span[0]].rstrip()
    after = contents[span[1]:].lstrip("\r\n")
    if before and after:
        combined = f"{before}{newline}{newline}{after}"
    elif before:
        combined = before + newline
    else:
        combined = after
    if keep_trailing and combined and not combined.endswith("\n"):
        combined += newline
    return combined


def published_sections_for(network: str) -> list[str]:
    if network == LOCALNET_ENVIRONMENT:
        return ["published.localnet", "published.test-publish"]
    return [f"published.{network}"]


def clear_published_entry(package_path: Path | str, network: str) -> bool:
    """Drop ``[published.<network>]`` from ``Published.toml``; returns whether it changed."""

    published = Path(package_path) / "Published.toml"
    try:
        contents = published.read_text(encoding="utf-8")
    except FileNotFoundError:
        return False

    updated = contents
    for section in published_sections_for(network):
        updated = remove_toml_section(updated, section)
    if updated == contents:
        return False
    published.write_text(updated, encoding="utf-8")
    return True


def clear_published_metadata(root: Path | str, network: str) -> list[Path]:
    cleared = []
    for published in sorted(Path(root).rglob("Published.toml")):
        if clear_published_entry(published.parent, network):
            cleared.append(published)
    return cleared


def remove_build_artifacts(root: Path | str) -> None:
    for build_dir in sorted(Path(root).rglob("build"), reverse=True):
        if build_dir.is_dir():
            shutil.rmtree(build_dir, ignore_errors=True)


def copy_move_sources(source_root: Path | str, destination: Path | str) -> Path:
    source_root = Path(source_root)
    destination = Path(destination)
    if not source_root.is_dir():
        raise LocalnetConfigurationError(f"Move sources not found at {source_root}")
    shutil.copytree(source_root, destination, ignore=shutil.ignore_patterns("build"))
    remove_build_artifacts(destination)
    return destination


def log_package_debug(label: str, package_path: Path) -> None:
    if not move_debug_enabled():
        return
    move_debug("%s packagePath=%s", label, package_path)
    try:
        contents = (package_path / "Move.toml").read_text(encoding="utf-8")
    except OSError as exc:
        move_debug("%s Move.toml read failed (%s)", label, exc)
        return
    present = bool(_entry_re(LOCALNET_ENVIRONMENT).search(contents))
    move_debug("%s Move.toml environments:\n%s", label, extract_environment_block(contents))
    move_debug("%s Move.toml localnet entry=%s", label, "present" if present else "missing")


def extract_json_payload(output: str) -> Any:
    """Parse the JSON document printed by the CLI, skipping leading log noise."""

    text = output.strip()
    if not text:
        return None
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        pass
    decoder = json.JSONDecoder()
    for match in reversed(list(re.finditer(r"^[\{\[]", text, re.MULTILINE))):
        try:
            payload, _ = decoder.raw_decode(text[match.start():])
        except json.JSONDecodeError:
            continue
        return payload
    return None


@dataclass(frozen=True)
class BuildOutput:
    package_path: Path
    modules: list[str]
    dependencies: list[str]
    digest: list[int] | None = None


def _normalize_build_json(payload: Any) -> tuple[list[str], list[str], Any]:
    if not isinstance(payload, Mapping):
        return [], [], None
    modules = payload.get("modules") or payload.get("compiledModules") or []
    dependencies = payload.get("dependencies") or payload.get("dependencyIds") or []
    return [str(m) for m in modules], [str(d) for d in dependencies], payload.get("digest")


def environment_flags(environment: str | None) -> list[str]:
    return ["--environment", environment] if environment else []


async def build_move_package(
    package_path: Path | str,
    *,
    environment: str | None = LOCALNET_ENVIRONMENT,
    env: Mapping[str, str] | None = None,
) -> BuildOutput:
    package_path = Path(package_path).resolve()
    if not (package_path / "Move.toml").exists():
        raise LocalnetConfigurationError(f"No Move.toml found in {package_path}")

    log_package_debug("build", package_path)
    args = [
        "move",
        "build",
        "--path",
        str(package_path),
        *environment_flags(environment),
        "--dump-bytecode-as-base64",
    ]
    result = await run_sui_command(args, env=env, check=False)
    if result.stderr.strip():
        logger.warning("sui move build: %s", result.stderr.strip())

    modules, dependencies, digest = _normalize_build_json(extract_json_payload(result.stdout))
    if not modules:
        raise SuiCliError(args, result.output or "build produced no modules", result.returncode)
    if not result.ok:
        logger.warning("sui move build exited with %s but JSON output was parsed", result.returncode)
    return BuildOutput(package_path, modules, dependencies, digest)


@dataclass(frozen=True)
class PublishArtifact:
    package_id: str
    digest: str
    package_path: Path
    sender: str
    upgrade_cap_id: str | None = None
    created_objects: list[dict[str, Any]] = field(default_factory=list)
    response: Mapping[str, Any] = field(default_factory=dict, repr=False)

    def as_record(self) -> dict[str, Any]:
        return {
            "packageId": self.package_id,
            "digest": self.digest,
            "packagePath": str(self.package_path),
            "sender": self.sender,
            "upgradeCapId": self.upgrade_cap_id,
        }


def parse_publish_response(
    response: Mapping[str, Any], package_path: Path, sender: str
) -> PublishArtifact:
    status = ((response.get("effects") or {}).get("status")) or {}
    if status and status.get("status") != "success":
        raise SuiCliError(["client", "publish", str(package_path)], str(status.get("error", status)))

    changes: Iterable[Mapping[str, Any]] = response.get("objectChanges") or []
    package_id = None
    upgrade_cap_id = None
    created = []
    for change in changes:
        kind = change.get("type")
        if kind == "published" and package_id is None:
            package_id = change.get("packageId")
        elif kind == "created":
            created.append(dict(change))
            if str(change.get("objectType", "")).endswith("::package::UpgradeCap"):
                upgrade_cap_id = change.get("objectId")
    if not package_id:
        raise SuiCliError(["client", "publish", str(package_path)], "no published package in response")
    return PublishArtifact(
        package_id=str(package_id),
        digest=str(response.get("digest", "")),
        package_path=package_path,
        sender=sender,
        upgrade_cap_id=upgrade_cap_id,
        created_objects=created,
        response=response,
    )


async def publish_package(
    package_path: Path | str,
    sender: str,
    *,
    gas_budget: int = DEFAULT_PUBLISH_GAS_BUDGET,
    with_unpublished_dependencies: bool = True,
    env: Mapping[str, str] | None = None,
) -> PublishArtifact:
    """Publish with ``sui client publish`` as ``sender`` and return the package artifact."""

    package_path = Path(package_path).resolve()
    log_package_debug("publish", package_path)

    await run_sui_command(["client", "switch", "--address", sender], env=env, check=False)
    args = [
        "client",
        "publish",
        str(package_path),
        "--json",
        "--gas-budget",
        str(gas_budget),
        "--sender",
        sender,
    ]
    if with_unpublished_dependencies:
        args.append("--with-unpublished-dependencies")

    result = await run_sui_command(args, env=env, check=False)
    payload = extract_json_payload(result.stdout)
    if not isinstance(payload, Mapping):
        raise SuiCliError(args, result.output or "publish produced no JSON", result.returncode)
    artifact = parse_publish_response(payload, package_path, sender)
    logger.info("Published %s as %s (tx %s)", package_path.name, artifact.package_id, artifact.digest)
    return artifact


def record_publish_artifact(
    artifacts_dir: Path | str,
    artifact: PublishArtifact,
    network: str = LOCALNET_ENVIRONMENT,
) -> Path:
    path = Path(artifacts_dir) / f"deployment.{network}.json"
    path.parent.mkdir(parents=True, exist_ok=True)
    records: list[dict[str, Any]] = []
    if path.exists():
        records = json.loads(path.read_text(encoding="utf-8"))
    records.append(artifact.as_record())
    path.write_text(json.dumps(records, indent=2), encoding="utf-8")
    return path


__all__ = [
    "LOCALNET_ENVIRONMENT",
    "BuildOutput",
    "PublishArtifact",
    "find_toml_section",
    "extract_environment_block",
    "ensure_environment_entry",
    "ensure_environment_entry_file",
    "register_localnet_environment",
    "list_move_toml_files",
    "remove_toml_section",
    "clear_published_entry",
    "clear_published_metadata",
    "remove_build_artifacts",
    "copy_move_sources",
    "extract_json_payload",
    "build_move_package",
    "parse_publish_response",
    "publish_package",
    "record_publish_artifact",
]
