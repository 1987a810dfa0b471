"""
Minimal Phala Cloud API client.

Covers the calls needed to provision CVMs against an on-chain KMS:
  GET  /teepods/available   nodes and their OS images
  GET  /kms                 KMS instances and their chain/contract
  POST /cvms/provision      returns the compose_hash for an app compose
  POST /cvms                commits a provisioned CVM under an app_id
"""

import os
import platform
import hashlib
import subprocess
import requests
from pathlib import Path
from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

CLOUD_API = os.environ.get("PHALA_CLOUD_API_PREFIX", "https://cloud-api.phala.network/api/v1")


class DeployError(Exception):
    pass


class NodeNotFound(DeployError):
    pass


class ImageNotFound(DeployError):
    pass


class KmsNotFound(DeployError):
    pass


def get_machine_key():
    """Generate machine-specific key like the CLI does"""
    hostname = platform.node()
    plat = platform.system().lower()
    # Node.js os.arch() returns 'x64' not 'x86_64'
    arch = platform.machine()
    if arch == "x86_64":
        arch = "x64"
    try:
        cpu_model = subprocess.check_output(
            "cat /proc/cpuinfo | grep 'model name' | head -1 | cut -d: -f2", shell=True
        ).decode().strip()
    except (OSError, subprocess.CalledProcessError):
        cpu_model = ""
    username = os.environ.get("USER", "")

    parts = f"{hostname}|{plat}|{arch}|{cpu_model}|{username}"
    return hashlib.sha256(parts.encode()).digest()


def decrypt_api_key(key_file: Path = None):
    """Decrypt the API key stored by `phala auth login`"""
    if key_file is None:
        key_file = Path.home() / ".phala-cloud" / "api-key"
    if not key_file.exists():
        return None

    encrypted = key_file.read_text().strip()
    parts = encrypted.split(":")
    if len(parts) != 2:
        return None

    key = get_machine_key()[:32]

    # Corrupt files and keys written on another machine fall through to None
    try:
        iv = bytes.fromhex(parts[0])
        ciphertext = bytes.fromhex(parts[1])
        cipher = Cipher(algorithms.AES(key), modes.CBC(iv))
        decryptor = cipher.decryptor()
        padded = decryptor.update(ciphertext) + decryptor.finalize()

        unpadder = padding.PKCS7(128).unpadder()
        return (unpadder.update(padded) + unpadder.finalize()).decode()
    except (ValueError, UnicodeDecodeError):
        return None


class Client:
    def __init__(self, api_key: str, base_url: str = CLOUD_API):
        self.base_url = base_url.rstrip("/")
        self.session = requests.Session()
        self.session.headers.update({
            "X-API-Key": api_key,
            "Content-Type": "application/json"
        })

    def get(self, path: str):
        resp = self.session.get(f"{self.base_url}{path}")
        resp.raise_for_status()
        return resp.json()

    def post(self, path: str, payload: dict):
        resp = self.session.post(f"{self.base_url}{path}", json=payload)
        resp.raise_for_status()
        return resp.json()


def create_client(api_key: str = None, base_url: str = None, environ=None) -> Client:
    if environ is None:
        environ = os.environ
    if api_key is None:
        api_key = environ.get("PHALA_CLOUD_API_KEY") or decrypt_api_key()
    return Client(api_key, base_url or CLOUD_API)


def get_available_nodes(client: Client):
    return client.get("/teepods/available")


def get_kms_list(client: Client):
    return client.get("/kms")


def find_node(nodes: dict, name: str):
    """Return (node, image) for the node called `name` and its first OS image"""
    target = next((n for n in nodes.get("nodes", []) if n.get("name") == name), None)
    if target is None:
        raise NodeNotFound(f"Node {name} not found")
    images = target.get("images") or []
    if not images:
        raise ImageNotFound(f"No available OS images found in the node {name}")
    return target, images[0]


def find_kms(kms_list: dict, kms_id: str):
    for kms in kms_list.get("items", []):
        if kms.get("slug") == kms_id or kms.get("id") == kms_id:
            return kms
    raise KmsNotFound(f"KMS {kms_id} not found")


def build_app_compose(name: str, compose_content: str, vcpu: int, memory: int, disk_size: int,
                      node: dict, image: dict, kms: dict):
    app_compose = {
        "name": name,
        "compose_file": {
            "docker_compose_file": compose_content,
            "allowed_envs": [],
            "features": ["kms"],
            "kms_enabled": True,
            "manifest_version": 2,
            "name": name,
            "public_logs": True,
            "public_sysinfo": True,
            "tproxy_enabled": False
        },
        "vcpu": vcpu,
        "memory": memory,
        "disk_size": disk_size,
        "teepod_id": node["teepod_id"],
        "image": image["name"],
        "env_keys": [],
        "listed": True
    }
    if kms.get("slug"):
        app_compose["kms_id"] = kms["slug"]
    return app_compose


def provision_cvm(client: Client, app_compose: dict):
    """Step 1: Provision CVM resources, returns compose_hash"""
    return client.post("/cvms/provision", app_compose)


def commit_cvm_provision(client: Client, app_id: str, compose_hash: str, kms_id: str,
                         contract_address: str, deployer_address: str):
    """Step 2: Create the provisioned CVM under an existing app_id"""
    payload = {
        "app_id": app_id.lower().replace("0x", ""),
        "compose_hash": compose_hash,
        "kms_id": kms_id,
        "encrypted_env": "",
        "app_auth_contract_address": contract_address,
        "deployer_address": deployer_address
    }
    return client.post("/cvms", payload)
