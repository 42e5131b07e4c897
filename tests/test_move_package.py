import json
from pathlib import Path

import pytest

from localnet_harness import move_package
from localnet_harness.errors import SuiCliError
from localnet_harness.move_package import (
    PublishArtifact,
    build_move_package,
    clear_published_metadata,
    copy_move_sources,
    ensure_environment_entry,
    extract_json_payload,
    parse_publish_response,
    publish_package,
    record_publish_artifact,
    register_localnet_environment,
    remove_toml_section,
)
from localnet_harness.sui_cli import CliResult

MANIFEST = '[package]\nname = "oracle_market"\n\n[environments]\ntestnet = "4c78adac"\n\n[addresses]\noracle_market = "0x0"\n'

PUBLISH_RESPONSE = {
    "digest": "9xPublish",
    "effects": {"status": {"status": "success"}},
    "objectChanges": [
        {"type": "mutated", "objectId": "0xgas"},
        {"type": "published", "packageId": "0xpkg", "modules": ["shop"]},
        {"type": "created", "objectId": "0xcap", "objectType": "0x2::package::UpgradeCap"},
        {"type": "created", "objectId": "0xshop", "objectType": "0xpkg::shop::Shop"},
    ],
}


def _fake_cli(monkeypatch, outputs):
    calls = []

    async def fake_run(args, *, env=None, cwd=None, check=True, timeout=None):
        calls.append((list(args), dict(env or {})))
        stdout, returncode = outputs.get(args[1], ("", 0))
        return CliResult(tuple(args), stdout, "", returncode)

    monkeypatch.setattr(move_package, "run_sui_command", fake_run)
    return calls


def test_environment_entry_inserted_under_existing_section():
    updated = ensure_environment_entry(MANIFEST, "localnet", "00c0ffee")

    assert '[environments]\nlocalnet = "00c0ffee"\ntestnet = "4c78adac"\n' in updated
    assert updated.replace('localnet = "00c0ffee"\n', "") == MANIFEST
    assert ensure_environment_entry(updated, "localnet", "ffffffff") == updated


def test_environment_section_appended_when_missing():
    updated = ensure_environment_entry('[package]\nname = "x"', "localnet", "00c0ffee")
    assert updated == '[package]\nname = "x"\n\n[environments]\nlocalnet = "00c0ffee"\n'


def test_environment_entry_keeps_crlf():
    contents = MANIFEST.replace("\n", "\r\n")
    updated = ensure_environment_entry(contents, "localnet", "00c0ffee")
    assert '[environments]\r\nlocalnet = "00c0ffee"\r\n' in updated


def test_remove_toml_section_keeps_other_networks():
    contents = (
        '[published.testnet]\npublished-at = "0x2"\n\n'
        '[published.localnet]\npublished-at = "0x1"\n\n'
        '[published.mainnet]\npublished-at = "0x3"\n'
    )
    assert remove_toml_section(contents, "published.localnet") == (
        '[published.testnet]\npublished-at = "0x2"\n\n[published.mainnet]\npublished-at = "0x3"\n'
    )
    assert remove_toml_section(contents, "published.devnet") == contents


def test_copy_sources_strips_build_and_stale_publications(move_sources, tmp_path):
    destination = copy_move_sources(move_sources, tmp_path / "contracts")
    package = destination / "oracle_market"

    assert (package / "sources" / "shop.move").exists()
    assert not (package / "build").exists()
    assert (move_sources / "oracle_market" / "build").exists()

    assert clear_published_metadata(destination, "localnet") == [package / "Published.toml"]
    published = (package / "Published.toml").read_text(encoding="utf-8")
    assert "published.localnet" not in published
    assert '[published.testnet]\npublished-at = "0x2"' in published

    assert register_localnet_environment(destination, "00c0ffee") == [package / "Move.toml"]
    assert register_localnet_environment(destination, "00c0ffee") == []


def test_extract_json_payload_skips_log_noise():
    output = 'INCLUDING DEPENDENCY Sui\nBUILDING oracle_market\n{"modules": ["AQID"], "dependencies": []}\n'
    assert extract_json_payload(output) == {"modules": ["AQID"], "dependencies": []}
    assert extract_json_payload("no json here") is None
    assert extract_json_payload("") is None


def test_parse_publish_response():
    artifact = parse_publish_response(PUBLISH_RESPONSE, Path("/tmp/pkg"), "0xowner")

    assert artifact.package_id == "0xpkg"
    assert artifact.upgrade_cap_id == "0xcap"
    assert [obj["objectId"] for obj in artifact.created_objects] == ["0xcap", "0xshop"]


def test_parse_publish_response_failure_status():
    response = {"digest": "x", "effects": {"status": {"status": "failure", "error": "InsufficientGas"}}}
    with pytest.raises(SuiCliError, match="InsufficientGas"):
        parse_publish_response(response, Path("/tmp/pkg"), "0xowner")


@pytest.mark.asyncio
async def test_build_uses_localnet_environment(monkeypatch, move_sources):
    calls = _fake_cli(monkeypatch, {"build": ('{"modules": ["AQID"], "dependencies": ["0x1", "0x2"]}', 0)})
    package = move_sources / "oracle_market"

    output = await build_move_package(package, env={"SUI_CONFIG_DIR": "/tmp/cfg"})

    args, env = calls[0]
    assert args[:2] == ["move", "build"]
    assert args[args.index("--environment") + 1] == "localnet"
    assert "--dump-bytecode-as-base64" in args
    assert env == {"SUI_CONFIG_DIR": "/tmp/cfg"}
    assert output.modules == ["AQID"]
    assert output.dependencies == ["0x1", "0x2"]


@pytest.mark.asyncio
async def test_build_without_modules_fails(monkeypatch, move_sources):
    _fake_cli(monkeypatch, {"build": ("error[E01002]: unexpected token", 1)})
    with pytest.raises(SuiCliError):
        await build_move_package(move_sources / "oracle_market")


@pytest.mark.asyncio
async def test_publish_switches_sender_and_parses_json(monkeypatch, move_sources):
    calls = _fake_cli(monkeypatch, {"publish": (json.dumps(PUBLISH_RESPONSE), 0)})

    artifact = await publish_package(move_sources / "oracle_market", "0xowner", gas_budget=123)

    assert calls[0][0] == ["client", "switch", "--address", "0xowner"]
    publish_args = calls[1][0]
    assert publish_args[publish_args.index("--gas-budget") + 1] == "123"
    assert publish_args[publish_args.index("--sender") + 1] == "0xowner"
    assert "--with-unpublished-dependencies" in publish_args
    assert artifact.package_id == "0xpkg"


def test_record_publish_artifact_appends(tmp_path):
    first = PublishArtifact("0xa", "d1", tmp_path / "a", "0xowner")
    second = PublishArtifact("0xb", "d2", tmp_path / "b", "0xowner", upgrade_cap_id="0xcap")

    record_publish_artifact(tmp_path, first)
    path = record_publish_artifact(tmp_path, second)

    records = json.loads(path.read_text(encoding="utf-8"))
    assert path.name == "deployment.localnet.json"
    assert [r["packageId"] for r in records] == ["0xa", "0xb"]
    assert records[1]["upgradeCapId"] == "0xcap"
