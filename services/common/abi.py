from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any

SPLITTER_EVENTS_ABI: list[dict[str, Any]] = [
    {
        'anonymous': False,
        'inputs': [
            {'indexed': True, 'internalType': 'address', 'name': 'sender', 'type': 'address'},
            {'indexed': False, 'internalType': 'uint256', 'name': 'totalAmount', 'type': 'uint256'},
            {'indexed': False, 'internalType': 'address[]', 'name': 'recipients', 'type': 'address[]'},
            {'indexed': False, 'internalType': 'uint256[]', 'name': 'amounts', 'type': 'uint256[]'}
        ],
        'name': 'EthSplit',
        'type': 'event'
    },
    {
        'anonymous': False,
        'inputs': [
            {'indexed': True, 'internalType': 'address', 'name': 'sender', 'type': 'address'},
            {'indexed': False, 'internalType': 'uint256', 'name': 'totalAmount', 'type': 'uint256'},
            {'indexed': False, 'internalType': 'address[]', 'name': 'recipients', 'type': 'address[]'}
        ],
        'name': 'EthSplitEqual',
        'type': 'event'
    },
    {
        'anonymous': False,
        'inputs': [
            {'indexed': True, 'internalType': 'address', 'name': 'sender', 'type': 'address'},
            {'indexed': True, 'internalType': 'contract IERC20', 'name': 'token', 'type': 'address'},
            {'indexed': False, 'internalType': 'address[]', 'name': 'recipients', 'type': 'address[]'},
            {'indexed': False, 'internalType': 'uint256[]', 'name': 'amounts', 'type': 'uint256[]'}
        ],
        'name': 'Erc20Split',
        'type': 'event'
    },
    {
        'anonymous': False,
        'inputs': [
            {'indexed': True, 'internalType': 'address', 'name': 'sender', 'type': 'address'},
            {'indexed': True, 'internalType': 'contract IERC20', 'name': 'token', 'type': 'address'},
            {'indexed': False, 'internalType': 'uint256', 'name': 'totalAmount', 'type': 'uint256'},
            {'indexed': False, 'internalType': 'address[]', 'name': 'recipients', 'type': 'address[]'}
        ],
        'name': 'Erc20SplitEqual',
        'type': 'event'
    }
]

ERC20_META_ABI = [
    {
        'inputs': [],
        'name': 'symbol',
        'outputs': [{'internalType': 'string', 'name': '', 'type': 'string'}],
        'stateMutability': 'view',
        'type': 'function'
    },
    {
        'inputs': [],
        'name': 'decimals',
        'outputs': [{'internalType': 'uint8', 'name': '', 'type': 'uint8'}],
        'stateMutability': 'view',
        'type': 'function'
    }
]

# Legacy tokens (MKR, SAI) return symbol() as bytes32.
ERC20_BYTES32_SYMBOL_ABI = [
    {
        'inputs': [],
        'name': 'symbol',
        'outputs': [{'internalType': 'bytes32', 'name': '', 'type': 'bytes32'}],
        'stateMutability': 'view',
        'type': 'function'
    }
]


def event_signature(entry: dict[str, Any]) -> str:
    types = ','.join(str(item['type']) for item in entry.get('inputs', []))
    return f"{entry['name']}({types})"


def load_splitter_abi(path: str | None = None) -> list[dict[str, Any]]:
    configured = path if path is not None else os.getenv('SPLITTER_ABI_PATH', '').strip()
    if not configured:
        return SPLITTER_EVENTS_ABI

    payload = json.loads(Path(configured).read_text(encoding='utf-8'))
    # Accept both a bare ABI list and a hardhat/foundry artifact.
    if isinstance(payload, dict):
        payload = payload.get('abi', [])
    if not isinstance(payload, list):
        raise ValueError(f'splitter abi at {configured} is not a list')
    return [entry for entry in payload if isinstance(entry, dict) and entry.get('type') == 'event']
