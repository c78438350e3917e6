from __future__ import annotations

import json
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping

DEFAULT_REGISTRY_PATH = 'config/chain-registry.json'
DEFAULT_CONFIRMATION_DEPTH = 0
DEFAULT_BATCH_SIZE = 500


class ChainConfigError(Exception):
    def __init__(self, chain_key: str, detail: str) -> None:
        super().__init__(f'chain {chain_key}: {detail}')
        self.chain_key = chain_key
        self.detail = detail


@dataclass(frozen=True)
class ChainConfig:
    chain_key: str
    chain_id: int
    name: str
    rpc_url: str
    contract_addresses: tuple[str, ...]
    start_block: int
    confirmation_depth: int
    batch_size: int


def _repo_root() -> Path:
    return Path(__file__).resolve().parents[2]


def registry_path(env: Mapping[str, str] | None = None) -> Path:
    env = os.environ if env is None else env
    configured = str(env.get('CHAIN_REGISTRY_PATH', '') or DEFAULT_REGISTRY_PATH).strip()
    path = Path(configured)
    if path.is_absolute():
        return path
    return _repo_root() / path


def load_registry_document(path: Path) -> dict[str, Any]:
    payload = json.loads(path.read_text(encoding='utf-8'))
    if not isinstance(payload, dict):
        raise ValueError(f'chain registry at {path} must be a JSON object')
    if not isinstance(payload.get('chains'), list):
        payload['chains'] = []
    return payload


def is_evm_address(value: str) -> bool:
    return bool(re.fullmatch(r'0x[a-fA-F0-9]{40}', str(value).strip()))


def _csv(raw: str) -> list[str]:
    return [part.strip() for part in raw.split(',') if part.strip()]


def _int_field(section: dict[str, Any], key: str, default: int | str, chain_key: str) -> int:
    value = section.get(key, default)
    try:
        parsed = int(value)
    except (TypeError, ValueError) as exc:
        raise ChainConfigError(chain_key, f'{key} must be an integer, got {value!r}') from exc
    if parsed < 0:
        raise ChainConfigError(chain_key, f'{key} must be >= 0')
    return parsed


def _contract_addresses(chain: dict[str, Any], chain_key: str) -> tuple[str, ...]:
    contracts = chain.get('contracts') if isinstance(chain.get('contracts'), dict) else {}
    raw = contracts.get('splitter', [])
    if isinstance(raw, str):
        raw = [raw]
    if not isinstance(raw, list):
        raise ChainConfigError(chain_key, 'contracts.splitter must be an address or a list of addresses')

    addresses: list[str] = []
    for item in raw:
        candidate = str(item).strip()
        if not is_evm_address(candidate):
            raise ChainConfigError(chain_key, f'invalid splitter address {candidate!r}')
        lowered = candidate.lower()
        if lowered not in addresses:
            addresses.append(lowered)

    if not addresses:
        raise ChainConfigError(chain_key, 'no splitter contract address configured')
    return tuple(addresses)


def resolve_rpc_url(chain: dict[str, Any], chain_id: int, env: Mapping[str, str]) -> str:
    explicit = str(env.get(f'SPLITTER_RPC_URL_{chain_id}', '')).strip()
    if explicit:
        return explicit

    rpc_env_key = str(chain.get('rpc_env_key', '')).strip()
    if rpc_env_key:
        from_chain_env = str(env.get(rpc_env_key, '')).strip()
        if from_chain_env:
            return from_chain_env

    template = str(chain.get('rpc_url_template', '')).strip()
    api_key = str(env.get('SPLITTER_RPC_API_KEY', '')).strip()
    if template:
        if '{api_key}' not in template:
            return template
        if api_key:
            return template.replace('{api_key}', api_key)

    return str(chain.get('default_rpc_url', '')).strip()


def parse_chain(chain: dict[str, Any], env: Mapping[str, str]) -> ChainConfig:
    chain_key = str(chain.get('chain_key', '')).strip() or str(chain.get('chain_id', '?'))

    try:
        chain_id = int(chain.get('chain_id', 0))
    except (TypeError, ValueError) as exc:
        raise ChainConfigError(chain_key, f"invalid chain_id {chain.get('chain_id')!r}") from exc
    if chain_id <= 0:
        raise ChainConfigError(chain_key, 'chain_id must be > 0')

    rpc_url = resolve_rpc_url(chain, chain_id, env)
    if not rpc_url:
        raise ChainConfigError(chain_key, 'no rpc url configured')
    if not rpc_url.startswith(('http://', 'https://')):
        raise ChainConfigError(chain_key, 'rpc url must be http(s)')

    indexer_cfg = chain.get('indexer') if isinstance(chain.get('indexer'), dict) else {}
    default_batch_size = str(env.get('INDEXER_BATCH_SIZE', '') or DEFAULT_BATCH_SIZE).strip()
    batch_size = _int_field(indexer_cfg, 'batch_size', default_batch_size, chain_key)
    if batch_size == 0:
        raise ChainConfigError(chain_key, 'batch_size must be > 0')

    return ChainConfig(
        chain_key=chain_key,
        chain_id=chain_id,
        name=str(chain.get('name', chain_key)),
        rpc_url=rpc_url,
        contract_addresses=_contract_addresses(chain, chain_key),
        start_block=_int_field(indexer_cfg, 'start_block', 0, chain_key),
        confirmation_depth=_int_field(indexer_cfg, 'confirmation_depth', DEFAULT_CONFIRMATION_DEPTH, chain_key),
        batch_size=batch_size
    )


def load_chain_configs(
    document: dict[str, Any],
    env: Mapping[str, str] | None = None
) -> tuple[list[ChainConfig], list[ChainConfigError]]:
    env = os.environ if env is None else env
    selected = set(_csv(str(env.get('SPLITTER_CHAINS', ''))))

    configs: list[ChainConfig] = []
    errors: list[ChainConfigError] = []
    seen_ids: set[int] = set()

    for chain in document.get('chains', []):
        if not isinstance(chain, dict):
            errors.append(ChainConfigError('?', 'registry entry is not an object'))
            continue
        chain_key = str(chain.get('chain_key', '')).strip()
        if selected and chain_key not in selected:
            continue

        try:
            config = parse_chain(chain, env)
        except ChainConfigError as exc:
            errors.append(exc)
            continue

        if config.chain_id in seen_ids:
            errors.append(ChainConfigError(config.chain_key, f'duplicate chain_id {config.chain_id}'))
            continue
        seen_ids.add(config.chain_id)
        configs.append(config)

    return configs, errors
