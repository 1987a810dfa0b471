"""
Deploy an AppAuth contract through the KMS factory.

deployAndRegisterApp() creates the AppAuth proxy, whitelists the device and
compose hash, and registers the app with the KMS in one transaction. On the
on-chain KMS the appId IS the AppAuth contract address.
"""

from web3 import Web3
from eth_account import Account

from phala_cloud import DeployError

KMS_FACTORY_ABI = [{
    "inputs": [
        {"name": "deployer", "type": "address"},
        {"name": "disableUpgrades", "type": "bool"},
        {"name": "allowAnyDevice", "type": "bool"},
        {"name": "deviceId", "type": "bytes32"},
        {"name": "composeHash", "type": "bytes32"}
    ],
    "name": "deployAndRegisterApp",
    "outputs": [{"name": "", "type": "address"}],
    "stateMutability": "nonpayable",
    "type": "function"
}, {
    "inputs": [
        {"name": "appId", "type": "address", "indexed": True},
        {"name": "deployer", "type": "address", "indexed": True}
    ],
    "name": "AppDeployedViaFactory",
    "type": "event"
}]

DEPLOY_GAS = 500000


class ChainMismatch(DeployError):
    pass


class DeploymentFailed(DeployError):
    pass


class MissingDeviceId(DeployError):
    pass


def to_bytes32(value: str) -> bytes:
    raw = value[2:] if value[:2].lower() == "0x" else value
    if len(raw) > 64:
        raise ValueError(f"Value does not fit in bytes32: {value}")
    return bytes.fromhex(raw.zfill(64))


def deploy_app_auth(chain_id, rpc_url: str, kms_contract_address: str, private_key: str,
                    device_id: str, compose_hash: str, allow_any_device: bool = False,
                    disable_upgrades: bool = False, w3=None):
    if w3 is None:
        w3 = Web3(Web3.HTTPProvider(rpc_url))
    account = Account.from_key(private_key)

    if chain_id is not None and w3.eth.chain_id != int(chain_id):
        raise ChainMismatch(f"RPC {rpc_url} serves chain {w3.eth.chain_id}, KMS is on chain {chain_id}")

    contract = w3.eth.contract(address=Web3.to_checksum_address(kms_contract_address), abi=KMS_FACTORY_ABI)

    # Zero device ID when any device may join
    if allow_any_device:
        device_id_bytes = bytes(32)
    elif device_id:
        device_id_bytes = to_bytes32(device_id)
    else:
        raise MissingDeviceId("Target node has no device_id; pass --allow-any-device to skip device whitelisting")

    tx = contract.functions.deployAndRegisterApp(
        account.address,
        disable_upgrades,
        allow_any_device,
        device_id_bytes,
        to_bytes32(compose_hash)
    ).build_transaction({
        'from': account.address,
        'nonce': w3.eth.get_transaction_count(account.address),
        'gas': DEPLOY_GAS,
        'gasPrice': w3.eth.gas_price
    })

    signed = account.sign_transaction(tx)
    tx_hash = w3.eth.send_raw_transaction(signed.raw_transaction)
    print(f"  Transaction: {tx_hash.hex()}")

    receipt = w3.eth.wait_for_transaction_receipt(tx_hash)
    if receipt["status"] != 1:
        raise DeploymentFailed(f"deployAndRegisterApp reverted in {tx_hash.hex()}")

    logs = contract.events.AppDeployedViaFactory().process_receipt(receipt)
    if not logs:
        raise DeploymentFailed("No AppDeployedViaFactory event found")

    app_id = logs[0]['args']['appId']
    return {
        "app_id": app_id,
        "app_auth_address": app_id,
        "deployer": account.address,
        "tx_hash": tx_hash.hex()
    }
