import json
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from fastapi.testclient import TestClient

from apps.api import main
from apps.api.chain_registry import chains_payload, load_chain_registry
from apps.api.config import get_settings


class ChainRegistryTests(unittest.TestCase):
    def tearDown(self) -> None:
        get_settings.cache_clear()
        load_chain_registry.cache_clear()

    def _with_registry(self, payload: dict) -> dict:
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / 'chain-registry.json'
            path.write_text(json.dumps(payload), encoding='utf-8')

            with patch.dict('os.environ', {'CHAIN_REGISTRY_PATH': str(path)}, clear=False):
                get_settings.cache_clear()
                load_chain_registry.cache_clear()
                return chains_payload()

    def test_chains_payload_hides_rpc_configuration(self) -> None:
        payload = self._with_registry(
            {
                'version': 3,
                'chains': [
                    {
                        'chain_key': 'base-sepolia',
                        'chain_id': 84532,
                        'name': 'Base Sepolia',
                        'rpc_env_key': 'BASE_SEPOLIA_RPC_URL',
                        'rpc_url_template': 'https://base-sepolia.g.alchemy.com/v2/{api_key}',
                        'default_rpc_url': 'https://base-sepolia-rpc.publicnode.com',
                        'contracts': {'splitter': '0x3aD5f3C8bD2c2E3a1D9F8b6e4C7A2b1E0d5F6a73'},
                        'indexer': {'start_block': 14200000, 'confirmation_depth': 5}
                    },
                    {
                        'chain_key': 'hardhat-local',
                        'chain_id': 31337,
                        'name': 'Hardhat Local',
                        'contracts': {'splitter': ['0x5FbDB2315678afecb367f032d93F642f64180aa3', 'bogus']}
                    }
                ]
            }
        )

        self.assertEqual(payload['registry_version'], 3)
        self.assertEqual([c['chain_id'] for c in payload['chains']], [31337, 84532])
        base = payload['chains'][1]
        self.assertEqual(base['splitter_addresses'], ['0x3ad5f3c8bd2c2e3a1d9f8b6e4c7a2b1e0d5f6a73'])
        self.assertEqual(base['confirmation_depth'], 5)
        self.assertEqual(payload['chains'][0]['splitter_addresses'], ['0x5fbdb2315678afecb367f032d93f642f64180aa3'])
        serialized = json.dumps(payload)
        self.assertNotIn('rpc', serialized)
        self.assertNotIn('alchemy', serialized)

    def test_missing_registry_is_empty(self) -> None:
        with patch.dict('os.environ', {'CHAIN_REGISTRY_PATH': '/nonexistent/chain-registry.json'}, clear=False):
            get_settings.cache_clear()
            load_chain_registry.cache_clear()
            payload = chains_payload()

        self.assertEqual(payload, {'chains': [], 'registry_version': 0})

    def test_chains_endpoint_serves_shipped_registry(self) -> None:
        load_chain_registry.cache_clear()
        response = TestClient(main.app).get('/chains')

        self.assertEqual(response.status_code, 200)
        self.assertIn(11155111, [c['chain_id'] for c in response.json()['chains']])


if __name__ == '__main__':
    unittest.main()
