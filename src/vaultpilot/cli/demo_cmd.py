"""Setup helpers: configuration template and demo key material."""

import shutil
from pathlib import Path

import typer
from rich.console import Console

from vaultpilot.config.loader import DEFAULT_CONFIG_PATH, save_config
from vaultpilot.config.schema import VaultPilotConfig
from vaultpilot.crypto.keys import generate_rsa_identity
from vaultpilot.crypto.tls import (
    CA_CERT_FILE,
    CA_DIR,
    NODE_CERT_FILE,
    NODE_KEY_FILE,
    create_ca,
    issue_node_certificate,
)

console = Console()


def config_template_command(
    write: bool = False, path: str | None = None, force: bool = False
) -> None:
    """Print a configuration template, or write the defaults to a config file."""
    if write:
        target = Path(path).expanduser() if path else DEFAULT_CONFIG_PATH
        if target.exists() and not force:
            console.print(f"[red]Config file already exists:[/red] {target} (use --force)")
            raise typer.Exit(1)
        save_config(VaultPilotConfig(), target)
        console.print(f"[green]✓[/green] Default configuration written to [cyan]{target}[/cyan]")
        return

    console.print("[bold]vaultpilot configuration template[/bold]\n")

    template = """# vaultpilot cluster configuration

cluster:
  nodes:
    # One entry per Vault + Consul node, indexed 1..N
    - index: 1
      address: http://127.0.0.1:8200
      consul_address: http://127.0.0.1:8500
    - index: 2
      address: http://127.0.0.1:8210
      consul_address: http://127.0.0.1:8510
    - index: 3
      address: http://127.0.0.1:8220
      consul_address: http://127.0.0.1:8520
      # name: vault-consul-vault-3  # container name, if not <project>_<service>_<index>

  transport:
    method: docker  # 'docker' or 'local'
    compose_file: docker-compose.yml
    project: vault
    service: consul-vault
    command_timeout: 120

engine:
  provider: vault  # 'vault' or 'memory' (local simulation)
  timeout: 30
  # After 'vaultpilot secure' Vault serves TLS: switch node addresses to
  # https:// and trust the CA passed to --ca-cert
  # ca_cert: secrets/CA/ca_cert.pem

consul:
  timeout: 10
  lock_ttl: 60s
  kv_prefix: vaultpilot

rollout:
  remote_dir: /etc/secure
  consul_config: /etc/consul/secure.json
  vault_config: /etc/vault/listener.json

bootstrap:
  quorum_timeout: 300  # seconds before giving up on the consensus quorum
  initial_delay: 1
  max_delay: 16
  decrypt_timeout: 300

# Encrypted shares (<keyfile>.key) and the root credential record
shares_dir: secrets
"""

    console.print(template)
    console.print(f"Config location: [cyan]{DEFAULT_CONFIG_PATH}[/cyan]")


def demo_ca_command(secrets_dir: str = "secrets", hostnames: list[str] | None = None) -> None:
    """Create a throwaway CA and the node certificate."""
    ca_dir = create_ca(secrets_dir)
    cert_path, key_path = issue_node_certificate(secrets_dir, hostnames)

    console.print(f"[green]✓[/green] CA: [cyan]{ca_dir}[/cyan]")
    console.print(f"[green]✓[/green] Node certificate: [cyan]{cert_path}[/cyan]")
    console.print(f"[green]✓[/green] Node key: [cyan]{key_path}[/cyan]")
    ca_cert = Path(secrets_dir) / CA_DIR / CA_CERT_FILE
    console.print(
        "\nSecure the cluster with:\n"
        f"  vaultpilot secure --tls-cert {cert_path} --tls-key {key_path} --ca-cert {ca_cert}"
    )
    console.print("[yellow]For demos only: the CA key is stored unencrypted[/yellow]")


def demo_key_command(name: str, directory: str = "keys", passphrase: str | None = None) -> None:
    """Generate an RSA recipient identity."""
    public_path, private_path = generate_rsa_identity(
        directory, name, passphrase.encode("utf-8") if passphrase else None
    )
    console.print(f"[green]✓[/green] Public key (give to init): [cyan]{public_path}[/cyan]")
    console.print(f"[green]✓[/green] Private key (keep): [cyan]{private_path}[/cyan]")


def demo_clean_command(
    secrets_dir: str = "secrets", keys_dir: str = "keys", names: list[str] | None = None
) -> None:
    """Delete the demo CA, the node certificate and demo-key identities.

    Share artifacts and the root credential record are left alone.
    """
    secrets = Path(secrets_dir)
    keys = Path(keys_dir)

    if names:
        private_keys = [keys / f"{name}.private.pem" for name in names]
    else:
        private_keys = sorted(keys.glob("*.private.pem")) if keys.is_dir() else []

    targets = [secrets / NODE_CERT_FILE, secrets / NODE_KEY_FILE]
    for private_key in private_keys:
        name = private_key.name.removesuffix(".private.pem")
        targets += [private_key, private_key.with_name(f"{name}.pem")]

    removed = []
    ca_dir = secrets / CA_DIR
    if ca_dir.is_dir():
        shutil.rmtree(ca_dir)
        removed.append(ca_dir)
    for path in targets:
        if path.is_file():
            path.unlink()
            removed.append(path)

    if not removed:
        console.print("Nothing to clean")
        return
    for path in removed:
        console.print(f"[green]✓[/green] Removed [cyan]{path}[/cyan]")
