"""Main CLI application using Typer."""

import logging
import sys

import typer
from rich.console import Console

from vaultpilot import __version__

# Create Typer app
app = typer.Typer(
    name="vaultpilot",
    help="vaultpilot - Bootstrap, unseal and secure a Vault cluster on Consul",
    no_args_is_help=True,
)

console = Console()

CONFIG_HELP = "Path to config file (default: ~/.vaultpilot/vaultpilot.yaml)"
LOCAL_HELP = "Use the local simulation (in-memory engine, directory transport)"


@app.callback()
def _configure(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show progress logs"),
):
    """Set up logging before any command runs."""
    if verbose:
        from rich.logging import RichHandler

        logging.basicConfig(
            level=logging.INFO,
            format="%(message)s",
            datefmt="[%X]",
            handlers=[RichHandler(console=console, show_path=False)],
        )


@app.command()
def version():
    """Show vaultpilot version."""
    console.print(f"vaultpilot version {__version__}")


@app.command()
def init(
    keys: str = typer.Option(
        ...,
        "--keys",
        "-k",
        help="Comma-separated recipient public key files (one share each)",
    ),
    threshold: int = typer.Option(
        None,
        "--threshold",
        "-t",
        help="Keys required to unseal (default: 1 for one key, 2 otherwise)",
    ),
    config_path: str = typer.Option(None, "--config", "-c", help=CONFIG_HELP),
    local: bool = typer.Option(False, "--local", help=LOCAL_HELP),
):
    """Initialize the cluster and write one encrypted share per recipient."""
    from vaultpilot.cli.cluster_cmd import init_command

    init_command(keys=keys, threshold=threshold, config_path=config_path, local=local)


@app.command()
def unseal(
    key_file: str = typer.Argument(..., help="Encrypted share file (<keyfile>.key)"),
    private_key: str = typer.Option(
        None,
        "--private-key",
        "-p",
        help="PEM private key for RSA shares (default: decrypt with gpg)",
    ),
    passphrase: str = typer.Option(
        None,
        "--passphrase",
        envvar="VAULTPILOT_KEY_PASSPHRASE",
        help="Passphrase for --private-key",
    ),
    gpg_homedir: str = typer.Option(None, "--gpg-homedir", help="GnuPG home directory"),
    config_path: str = typer.Option(None, "--config", "-c", help=CONFIG_HELP),
    local: bool = typer.Option(False, "--local", help=LOCAL_HELP),
):
    """Decrypt your share and submit it to every node."""
    from vaultpilot.cli.cluster_cmd import unseal_command

    unseal_command(
        key_file=key_file,
        private_key=private_key,
        passphrase=passphrase,
        gpg_homedir=gpg_homedir,
        config_path=config_path,
        local=local,
    )


@app.command()
def secure(
    tls_key: str = typer.Option(None, "--tls-key", help="PEM private key for the nodes"),
    tls_cert: str = typer.Option(None, "--tls-cert", help="PEM certificate for the nodes"),
    ca_cert: str = typer.Option(None, "--ca-cert", help="PEM CA certificate"),
    gossip: str = typer.Option(
        None, "--gossip", help="Gossip encryption key (generated on a node if omitted)"
    ),
    config_path: str = typer.Option(None, "--config", "-c", help=CONFIG_HELP),
    local: bool = typer.Option(False, "--local", help=LOCAL_HELP),
):
    """Enable gossip encryption and TLS on every node."""
    from vaultpilot.cli.cluster_cmd import secure_command

    secure_command(
        tls_key=tls_key,
        tls_cert=tls_cert,
        ca_cert=ca_cert,
        gossip=gossip,
        config_path=config_path,
        local=local,
    )


@app.command()
def policy(
    name: str = typer.Argument(..., help="Policy name"),
    document: str = typer.Argument(..., help="Path to the policy document (HCL or JSON)"),
    token: str = typer.Option(
        None,
        "--token",
        envvar="VAULT_TOKEN",
        help="Vault token (default: the recorded root credential)",
    ),
    config_path: str = typer.Option(None, "--config", "-c", help=CONFIG_HELP),
    local: bool = typer.Option(False, "--local", help=LOCAL_HELP),
):
    """Create or replace an access-control policy."""
    from vaultpilot.cli.cluster_cmd import policy_command

    policy_command(
        name=name, document=document, token=token, config_path=config_path, local=local
    )


@app.command()
def status(
    config_path: str = typer.Option(None, "--config", "-c", help=CONFIG_HELP),
    local: bool = typer.Option(False, "--local", help=LOCAL_HELP),
):
    """Show seal state, quorum and secure-config version per node."""
    from vaultpilot.cli.cluster_cmd import status_command

    status_command(config_path=config_path, local=local)


@app.command()
def verify(
    config_path: str = typer.Option(None, "--config", "-c", help=CONFIG_HELP),
    local: bool = typer.Option(False, "--local", help=LOCAL_HELP),
):
    """Check that every node runs the same secure-config version."""
    from vaultpilot.cli.cluster_cmd import verify_command

    verify_command(config_path=config_path, local=local)


@app.command()
def bootstrap(
    keys: str = typer.Option(
        ..., "--keys", "-k", help="Comma-separated recipient public key files"
    ),
    threshold: int = typer.Option(None, "--threshold", "-t", help="Keys required to unseal"),
    private_key: list[str] = typer.Option(
        None,
        "--private-key",
        "-p",
        help="PEM private key of a recipient present here (repeatable)",
    ),
    gpg: bool = typer.Option(
        False, "--gpg", help="Decrypt the shares of every recipient with the local gpg keyring"
    ),
    tls_key: str = typer.Option(None, "--tls-key", help="Run the secure rollout with this key"),
    tls_cert: str = typer.Option(None, "--tls-cert", help="Certificate for the secure rollout"),
    ca_cert: str = typer.Option(None, "--ca-cert", help="CA certificate for the secure rollout"),
    gossip: str = typer.Option(None, "--gossip", help="Gossip encryption key"),
    policies: list[str] = typer.Option(
        None, "--policy", help="Initial policy as NAME=PATH (repeatable)"
    ),
    demo: bool = typer.Option(
        False, "--demo", help="Single-operator demo: one key, threshold 1"
    ),
    config_path: str = typer.Option(None, "--config", "-c", help=CONFIG_HELP),
    local: bool = typer.Option(False, "--local", help=LOCAL_HELP),
):
    """Launch, secure, initialize, unseal and configure a new cluster."""
    from vaultpilot.cli.cluster_cmd import bootstrap_command

    bootstrap_command(
        keys=keys,
        threshold=threshold,
        private_keys=private_key or [],
        gpg=gpg,
        tls_key=tls_key,
        tls_cert=tls_cert,
        ca_cert=ca_cert,
        gossip=gossip,
        policies=policies or [],
        demo=demo,
        config_path=config_path,
        local=local,
    )


@app.command("config-template")
def config_template(
    write: bool = typer.Option(
        False, "--write", "-w", help="Write the default configuration instead of printing"
    ),
    path: str = typer.Option(
        None, "--path", help="Destination (default: ~/.vaultpilot/vaultpilot.yaml)"
    ),
    force: bool = typer.Option(False, "--force", help="Overwrite an existing file"),
):
    """Print a configuration template, or write one with --write."""
    from vaultpilot.cli.demo_cmd import config_template_command

    config_template_command(write=write, path=path, force=force)


@app.command("demo-ca")
def demo_ca(
    secrets_dir: str = typer.Option("secrets", "--dir", "-d", help="Output directory"),
    hostname: list[str] = typer.Option(
        None, "--hostname", help="Hostname or IP for the node certificate (repeatable)"
    ),
):
    """Create a throwaway CA and the shared node certificate."""
    from vaultpilot.cli.demo_cmd import demo_ca_command

    demo_ca_command(secrets_dir=secrets_dir, hostnames=hostname or None)


@app.command("demo-key")
def demo_key(
    name: str = typer.Argument(..., help="Operator name (file base name)"),
    directory: str = typer.Option("keys", "--dir", "-d", help="Output directory"),
    passphrase: str = typer.Option(
        None,
        "--passphrase",
        envvar="VAULTPILOT_KEY_PASSPHRASE",
        help="Protect the private key with a passphrase",
    ),
):
    """Generate an RSA recipient identity for the local simulation."""
    from vaultpilot.cli.demo_cmd import demo_key_command

    demo_key_command(name=name, directory=directory, passphrase=passphrase)


@app.command("demo-clean")
def demo_clean(
    names: list[str] = typer.Argument(
        None, help="Operators whose demo keys to delete (default: all)"
    ),
    secrets_dir: str = typer.Option("secrets", "--dir", "-d", help="Directory given to demo-ca"),
    keys_dir: str = typer.Option("keys", "--keys-dir", help="Directory given to demo-key"),
):
    """Delete the demo CA, node certificate and demo keys."""
    from vaultpilot.cli.demo_cmd import demo_clean_command

    demo_clean_command(secrets_dir=secrets_dir, keys_dir=keys_dir, names=names or None)


def main():
    """Entry point for the CLI."""
    try:
        app()
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted by user[/yellow]")
        sys.exit(130)
    except Exception as e:
        console.print(f"[red]Error: {e}[/red]")
        sys.exit(1)


if __name__ == "__main__":
    main()
