#!/usr/bin/env python3
"""
Deploy several CVMs that share one app_id and one AppAuth contract.

This script:
1. Finds the target node (prod7 by default) and the KMS given by --kms-id
2. Provisions the first CVM and deploys AppAuth bound to its compose hash
3. Commits the first CVM
4. Provisions and commits --count - 1 more CVMs under the same app_id

Usage:
    python3 deploy_multi.py docker-compose.yaml --kms-id kms-base-prod7 --count 3

PRIVATEKEY and RPC_URL env vars can replace --private-key and --rpc-url.
PHALA_CLOUD_API_KEY (or ~/.phala-cloud/api-key) authenticates the API calls.
"""

import os
import sys
import argparse
import traceback
from dataclasses import dataclass
from pathlib import Path

import app_auth
import phala_cloud

USAGE = "Usage: python deploy_multi.py <path_to_docker_compose_yml> --private-key <key> --rpc-url <url> --kms-id <id>"

DEFAULT_NODE_NAME = "prod7"


class ArgumentParser(argparse.ArgumentParser):
    """Report bad flags on stdout and exit 1 like every other usage error"""

    def error(self, message):
        print(f"{self.prog}: error: {message}")
        print(USAGE)
        sys.exit(1)


@dataclass
class DeployInputs:
    compose_content: str
    private_key: str
    rpc_url: str
    kms_id: str
    name: str = "multi-app"
    vcpu: int = 1
    memory: int = 1024
    disk_size: int = 10
    count: int = 2
    node_name: str = DEFAULT_NODE_NAME
    allow_any_device: bool = False


def parse_args(argv=None):
    parser = ArgumentParser(prog="deploy_multi.py", description="Deploy multiple CVMs under one app_id")
    parser.add_argument("compose_file", nargs="?", help="path to docker-compose.yml")
    parser.add_argument("--name", default="multi-app")
    parser.add_argument("--vcpu", type=int, default=1)
    parser.add_argument("--memory", type=int, default=1024, help="memory in MB")
    parser.add_argument("--disk-size", type=int, default=10, help="disk size in GB")
    parser.add_argument("--private-key")
    parser.add_argument("--rpc-url")
    parser.add_argument("--kms-id")
    parser.add_argument("--count", type=int, default=2)
    parser.add_argument("--node-id", type=int, help="ignored, use --node-name")
    parser.add_argument("--node-name", default=DEFAULT_NODE_NAME)
    parser.add_argument("--allow-any-device", action="store_true",
                        help="deploy AppAuth with allowAnyDevice=true instead of whitelisting the node")
    return parser.parse_args(argv)


def fail(message: str):
    print(message)
    sys.exit(1)


def load_inputs(args, environ=None) -> DeployInputs:
    if environ is None:
        environ = os.environ

    if not args.compose_file:
        fail(USAGE)

    compose_path = Path(args.compose_file)
    if not compose_path.exists():
        fail(f"File not found: {args.compose_file}")
    compose_content = compose_path.read_text()

    private_key = args.private_key or environ.get("PRIVATEKEY")
    if not private_key:
        fail("--private-key or PRIVATEKEY environment variable is required")

    rpc_url = args.rpc_url or environ.get("RPC_URL")
    if not rpc_url:
        fail("--rpc-url or RPC_URL environment variable is required")

    if not args.kms_id:
        fail("--kms-id is required")

    for flag, value in (("--vcpu", args.vcpu), ("--memory", args.memory),
                        ("--disk-size", args.disk_size), ("--count", args.count)):
        if value < 1:
            fail(f"{flag} must be at least 1")

    if args.node_id is not None:
        print(f"Note: --node-id {args.node_id} is ignored, selecting node by name ({args.node_name})")

    return DeployInputs(
        compose_content=compose_content,
        private_key=private_key,
        rpc_url=rpc_url,
        kms_id=args.kms_id,
        name=args.name,
        vcpu=args.vcpu,
        memory=args.memory,
        disk_size=args.disk_size,
        count=args.count,
        node_name=args.node_name,
        allow_any_device=args.allow_any_device,
    )


def deploy(inputs: DeployInputs, client, deploy_contract=None):
    """Provision and commit `inputs.count` CVMs; returns the commit results in order"""
    if deploy_contract is None:
        deploy_contract = app_auth.deploy_app_auth

    # Get available nodes and find the target
    nodes = phala_cloud.get_available_nodes(client)
    node, image = phala_cloud.find_node(nodes, inputs.node_name)
    print(f"Node: {node['name']} (teepod_id={node['teepod_id']}, image={image['name']})")

    # Get KMS info
    kms_list = phala_cloud.get_kms_list(client)
    kms = phala_cloud.find_kms(kms_list, inputs.kms_id)
    print(f"KMS: {kms.get('slug') or kms['id']} (chain_id={kms.get('chain_id')})")

    # Step 1: Base app compose, shared by every instance
    app_compose = phala_cloud.build_app_compose(
        name=inputs.name,
        compose_content=inputs.compose_content,
        vcpu=inputs.vcpu,
        memory=inputs.memory,
        disk_size=inputs.disk_size,
        node=node,
        image=image,
        kms=kms
    )

    # Step 2: First instance creates the contract
    print("\nDeploying first instance and creating contract...")
    provision = phala_cloud.provision_cvm(client, app_compose)
    compose_hash = provision["compose_hash"]
    print(f"  Compose Hash: {compose_hash}")

    contract = deploy_contract(
        chain_id=kms.get("chain_id"),
        rpc_url=inputs.rpc_url,
        kms_contract_address=kms["kms_contract_address"],
        private_key=inputs.private_key,
        device_id=node.get("device_id"),
        compose_hash=compose_hash,
        allow_any_device=inputs.allow_any_device
    )
    print(f"  App ID: {contract['app_id']}")
    print(f"  AppAuth: {contract['app_auth_address']}")
    print(f"  Deployer: {contract['deployer']}")

    result = phala_cloud.commit_cvm_provision(
        client,
        app_id=contract["app_id"],
        compose_hash=compose_hash,
        kms_id=inputs.kms_id,
        contract_address=contract["app_auth_address"],
        deployer_address=contract["deployer"]
    )
    print(f"First instance deployed: {result}")
    results = [result]

    # Step 3: Additional instances reuse the app_id and contract
    for i in range(1, inputs.count):
        print(f"\nDeploying instance {i + 1}...")
        provision = phala_cloud.provision_cvm(client, app_compose)
        print(f"  Compose Hash: {provision['compose_hash']}")
        result = phala_cloud.commit_cvm_provision(
            client,
            app_id=contract["app_id"],
            compose_hash=provision["compose_hash"],
            kms_id=inputs.kms_id,
            contract_address=contract["app_auth_address"],
            deployer_address=contract["deployer"]
        )
        print(f"Instance {i + 1} deployed: {result}")
        results.append(result)

    print("\n" + "=" * 60)
    print(f"SUCCESS! {len(results)} instances deployed")
    print(f"  APP_ID={contract['app_id']}")
    print(f"  APP_AUTH_ADDRESS={contract['app_auth_address']}")
    print("=" * 60)
    return results


def main(argv=None, environ=None):
    if environ is None:
        environ = os.environ
    inputs = load_inputs(parse_args(argv), environ)
    try:
        client = phala_cloud.create_client(environ=environ)
        deploy(inputs, client)
    except Exception:
        traceback.print_exc()
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
