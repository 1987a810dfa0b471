from __future__ import annotations

from types import SimpleNamespace

import pytest

import app_auth
from app_auth import ChainMismatch, DeploymentFailed, MissingDeviceId

# anvil's first dev account
PRIVATE_KEY = "0xac0974bec39a17e36ba4a6b4d238ff944bacb478cbed5efcae784d7bf4f2ff80"
DEPLOYER = "0xf39Fd6e51aad88F6F4ce6aB8827279cffFb92266"
KMS_CONTRACT = "0x2f83172A49584C017F2B256F0FB2Dca14126Ba9C"
APP_ID = "0x5a367973dE2aB2e7B0aC1B7e6B6dC6E3Cc1d0A71"
TX_HASH = b"\x11" * 32
COMPOSE_HASH = "ab" * 32


class FakeContract:
    """Stands in for the KMS factory: records the call and serves receipt logs."""

    def __init__(self, address, logs):
        self.address = address
        self.logs = logs
        self.call_args = None
        self.tx_params = None
        self.functions = SimpleNamespace(deployAndRegisterApp=self.deploy_and_register_app)
        self.events = SimpleNamespace(
            AppDeployedViaFactory=lambda: SimpleNamespace(process_receipt=lambda receipt: self.logs)
        )

    def deploy_and_register_app(self, *args):
        self.call_args = args
        return SimpleNamespace(build_transaction=self.build_transaction)

    def build_transaction(self, params):
        self.tx_params = params
        return {
            "to": self.address,
            "value": 0,
            "data": "0x",
            "gas": params["gas"],
            "gasPrice": params["gasPrice"],
            "nonce": params["nonce"],
            "chainId": 8453,
        }


class FakeEth:
    def __init__(self, status=1, logs=None, chain_id=8453):
        self.chain_id = chain_id
        self.gas_price = 1_000_000
        self.status = status
        self.logs = [{"args": {"appId": APP_ID, "deployer": DEPLOYER}}] if logs is None else logs
        self.contract_instance = None
        self.sent = []

    def contract(self, address, abi):
        assert abi is app_auth.KMS_FACTORY_ABI
        self.contract_instance = FakeContract(address, self.logs)
        return self.contract_instance

    def get_transaction_count(self, address):
        assert address == DEPLOYER
        return 7

    def send_raw_transaction(self, raw):
        self.sent.append(raw)
        return TX_HASH

    def wait_for_transaction_receipt(self, tx_hash):
        assert tx_hash == TX_HASH
        return {"status": self.status, "logs": []}


def deploy(eth, **overrides):
    kwargs = dict(
        chain_id=8453,
        rpc_url="http://localhost:8545",
        kms_contract_address=KMS_CONTRACT.lower(),
        private_key=PRIVATE_KEY,
        device_id="0x" + "cd" * 32,
        compose_hash=COMPOSE_HASH,
        w3=SimpleNamespace(eth=eth),
    )
    kwargs.update(overrides)
    return app_auth.deploy_app_auth(**kwargs)


def test_to_bytes32_pads_and_strips_prefix() -> None:
    assert app_auth.to_bytes32("0x01") == bytes(31) + b"\x01"
    assert app_auth.to_bytes32("0X01") == bytes(31) + b"\x01"
    assert app_auth.to_bytes32("ab" * 32) == bytes.fromhex("ab" * 32)


def test_to_bytes32_rejects_oversized_value() -> None:
    with pytest.raises(ValueError):
        app_auth.to_bytes32("00" * 33)


def test_deploy_refuses_rpc_on_wrong_chain() -> None:
    eth = FakeEth(chain_id=1)
    with pytest.raises(ChainMismatch, match="chain 8453"):
        deploy(eth)
    assert eth.sent == []


def test_deploy_whitelists_node_device() -> None:
    eth = FakeEth()
    result = deploy(eth)

    contract = eth.contract_instance
    assert contract.address == KMS_CONTRACT
    assert contract.call_args == (
        DEPLOYER, False, False, bytes.fromhex("cd" * 32), bytes.fromhex(COMPOSE_HASH),
    )
    assert contract.tx_params == {"from": DEPLOYER, "nonce": 7, "gas": app_auth.DEPLOY_GAS, "gasPrice": 1_000_000}
    assert len(eth.sent) == 1
    assert result == {
        "app_id": APP_ID,
        "app_auth_address": APP_ID,
        "deployer": DEPLOYER,
        "tx_hash": TX_HASH.hex(),
    }


def test_deploy_allow_any_device_uses_zero_device_id() -> None:
    eth = FakeEth()
    deploy(eth, device_id=None, allow_any_device=True)

    args = eth.contract_instance.call_args
    assert args[2] is True
    assert args[3] == bytes(32)


def test_deploy_without_device_id_needs_allow_any_device() -> None:
    eth = FakeEth()
    with pytest.raises(MissingDeviceId, match="--allow-any-device"):
        deploy(eth, device_id=None)
    assert eth.sent == []


def test_deploy_reverted_transaction() -> None:
    with pytest.raises(DeploymentFailed, match="reverted"):
        deploy(FakeEth(status=0))


def test_deploy_without_factory_event() -> None:
    with pytest.raises(DeploymentFailed, match="No AppDeployedViaFactory event"):
        deploy(FakeEth(logs=[]))
