"""Sui key material: Ed25519 keypairs, keystore files and the localnet treasury.

The ``sui`` CLI stores keys as a JSON array of base64 strings, each one the
signature-scheme flag byte followed by the 32 byte private seed.  Genesis
writes such a keystore into the localnet config directory with a handful of
pre-funded accounts; :func:`resolve_treasury_account` picks the first of them
that still holds SUI so tests can be funded without a faucet.
"""

from __future__ import annotations

import base64
import hashlib
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from solders.keypair import Keypair

from .errors import KeystoreEntryNotFoundError, LocalnetConfigurationError
from .rpc import SUI_COIN_TYPE

logger = logging.getLogger(__name__)

ED25519_FLAG = 0x00
# IntentScope::TransactionData, IntentVersion::V0, AppId::Sui
TRANSACTION_INTENT = bytes([0, 0, 0])


class CoinReader(Protocol):
    async def get_coins(self, owner: str, coin_type: str = ..., *, limit: int = ...) -> list[dict]: ...


def normalize_sui_address(address: str) -> str:
    value = address.strip().lower()
    if value.startswith("0x"):
        value = value[2:]
    return "0x" + value.rjust(64, "0")


def _blake2b_256(data: bytes) -> bytes:
    return hashlib.blake2b(data, digest_size=32).digest()


class SuiKeypair:
    """Ed25519 keypair with Sui address derivation and transaction signing."""

    def __init__(self, keypair: Keypair) -> None:
        self._keypair = keypair

    @classmethod
    def from_seed(cls, seed: bytes) -> "SuiKeypair":
        if len(seed) != 32:
            raise ValueError(f"Ed25519 seed must be 32 bytes, got {len(seed)}")
        return cls(Keypair.from_seed(bytes(seed)))

    @classmethod
    def from_keystore_entry(cls, entry: str) -> "SuiKeypair":
        raw = base64.b64decode(entry.strip())
        if not raw or raw[0] != ED25519_FLAG:
            scheme = raw[0] if raw else None
            raise ValueError(f"Unsupported key scheme {scheme}.")
        return cls.from_seed(raw[1:33])

    @property
    def public_key(self) -> bytes:
        return bytes(self._keypair.pubkey())

    @property
    def address(self) -> str:
        return "0x" + _blake2b_256(bytes([ED25519_FLAG]) + self.public_key).hex()

    def secret(self) -> bytes:
        return bytes(self._keypair.secret())

    def keystore_entry(self) -> str:
        return base64.b64encode(bytes([ED25519_FLAG]) + self.secret()).decode("ascii")

    def sign_transaction(self, tx_bytes: str) -> str:
        """Return the serialized Sui signature for base64 ``tx_bytes``."""

        digest = _blake2b_256(TRANSACTION_INTENT + base64.b64decode(tx_bytes))
        signature = bytes(self._keypair.sign_message(digest))
        return base64.b64encode(bytes([ED25519_FLAG]) + signature + self.public_key).decode("ascii")

    def __repr__(self) -> str:
        return f"SuiKeypair({self.address})"


@dataclass(frozen=True)
class TestAccount:
    __test__ = False

    label: str
    keypair: SuiKeypair
    address: str


def derive_test_account(test_id: str, label: str) -> TestAccount:
    """Deterministically derive an account from ``(test_id, label)``."""

    seed = hashlib.sha256(f"{test_id}:{label}".encode("utf-8")).digest()
    keypair = SuiKeypair.from_seed(seed)
    return TestAccount(label=label, keypair=keypair, address=keypair.address)


def read_keystore_entries(keystore_path: Path | str) -> list[str]:
    data = json.loads(Path(keystore_path).read_text(encoding="utf-8"))
    if not isinstance(data, list):
        raise LocalnetConfigurationError(f"Keystore {keystore_path} is not a JSON array.")
    return [str(entry) for entry in data]


def write_keystore_entries(keystore_path: Path | str, entries: list[str]) -> None:
    Path(keystore_path).write_text(json.dumps(entries, indent=2), encoding="utf-8")


def list_keystore_files(root: Path | str) -> list[Path]:
    return sorted(path for path in Path(root).rglob("*.keystore") if path.is_file())


def resolve_keystore_path(config_dir: Path | str) -> Path:
    config_dir = Path(config_dir)
    for candidate in (config_dir / "sui.keystore", config_dir / "sui_config" / "sui.keystore"):
        if candidate.exists():
            return candidate

    for path in list_keystore_files(config_dir):
        if path.name == "sui.keystore":
            return path

    raise LocalnetConfigurationError(f"Unable to locate a localnet keystore under {config_dir}.")


def treasury_index_candidates(entry_count: int, override_index: int | None = None) -> list[int]:
    indices = list(range(entry_count))
    if override_index is None:
        return indices
    return [override_index] + [index for index in indices if index != override_index]


async def resolve_treasury_account(
    config_dir: Path | str,
    client: CoinReader,
    *,
    override_index: int | None = None,
) -> TestAccount:
    """Return the first keystore account holding a positive SUI balance."""

    keystore_path = resolve_keystore_path(config_dir)
    entries = read_keystore_entries(keystore_path)
    if not entries:
        raise LocalnetConfigurationError(f"Localnet keystore at {keystore_path} is empty.")

    scanned: list[str] = []
    for index in treasury_index_candidates(len(entries), override_index):
        if index >= len(entries):
            scanned.append(f"[{index}] <no such entry>")
            continue
        try:
            keypair = SuiKeypair.from_keystore_entry(entries[index])
            address = keypair.address
            coins = await client.get_coins(address, SUI_COIN_TYPE, limit=50)
        except Exception as exc:
            scanned.append(f"[{index}] error: {exc}")
            logger.debug("Treasury candidate %s rejected", index, exc_info=True)
            continue

        balance = sum(int(coin.get("balance", 0)) for coin in coins)
        scanned.append(f"[{index}] {address} balance={balance}")
        if balance > 0:
            logger.info("Using localnet treasury account %s (index %s)", address, index)
            return TestAccount(label=f"treasury-{index}", keypair=keypair, address=address)

    hint = "" if override_index is not None else " Set SUI_IT_TREASURY_INDEX to force a specific keystore entry."
    listing = "\n".join(scanned)
    raise LocalnetConfigurationError(
        f"No funded localnet accounts found in {keystore_path}.{hint} "
        f"Start with SUI_IT_WITH_FAUCET=1 to use the local faucet.\n"
        f"Scanned candidates:\n{listing}"
    )


def register_account(config_dir: Path | str, entry: str) -> Path:
    """Append ``entry`` to the localnet keystore unless already present."""

    keystore_path = resolve_keystore_path(config_dir)
    entries = read_keystore_entries(keystore_path)
    if entry in entries:
        return keystore_path
    write_keystore_entries(keystore_path, [*entries, entry])
    return keystore_path


def sanitize_label(value: str) -> str:
    return "".join(ch if ch.isalnum() or ch in "-_" else "-" for ch in value.lower())


def write_account_keystore(artifacts_dir: Path | str, account: TestAccount) -> tuple[Path, str]:
    """Write a single-entry keystore for ``account`` under ``artifacts_dir/keystore``."""

    keystore_dir = Path(artifacts_dir) / "keystore"
    keystore_dir.mkdir(parents=True, exist_ok=True)
    keystore_path = keystore_dir / f"{sanitize_label(account.label)}.keystore"
    entry = account.keypair.keystore_entry()
    write_keystore_entries(keystore_path, [entry])
    return keystore_path, entry


def list_keystore_addresses(entries: list[str]) -> list[str]:
    listing = []
    for index, entry in enumerate(entries):
        try:
            listing.append(f"[{index}] {SuiKeypair.from_keystore_entry(entry).address}")
        except ValueError as exc:
            listing.append(f"[{index}] <unreadable: {exc}>")
    return listing


def load_keypair_by_address(keystore_path: Path | str, address: str) -> SuiKeypair:
    entries = read_keystore_entries(keystore_path)
    target = normalize_sui_address(address)
    for entry in entries:
        try:
            keypair = SuiKeypair.from_keystore_entry(entry)
        except ValueError:
            continue
        if keypair.address == target:
            return keypair
    raise KeystoreEntryNotFoundError(address, str(keystore_path), list_keystore_addresses(entries))


__all__ = [
    "SuiKeypair",
    "TestAccount",
    "derive_test_account",
    "normalize_sui_address",
    "read_keystore_entries",
    "write_keystore_entries",
    "list_keystore_files",
    "resolve_keystore_path",
    "treasury_index_candidates",
    "resolve_treasury_account",
    "register_account",
    "sanitize_label",
    "write_account_keystore",
    "load_keypair_by_address",
]
