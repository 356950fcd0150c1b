"""CLI commands driving the cluster."""

import asyncio
from collections.abc import Coroutine
from pathlib import Path
from typing import Any

import typer
from rich.console import Console
from rich.table import Table

from vaultpilot.cluster import Cluster
from vaultpilot.config.loader import ConfigError, load_config
from vaultpilot.config.schema import VaultPilotConfig
from vaultpilot.consensus import ConsensusStatus
from vaultpilot.core.bootstrap import (
    BootstrapReport,
    ClusterBootstrapSequencer,
    SecureMaterial,
    initialize_cluster,
)
from vaultpilot.core.distribution import DistributionReport, read_root_credential
from vaultpilot.core.rollout import ReconciliationReport, RolloutReport, SecureRolloutManager
from vaultpilot.core.unseal import UnsealCoordinator, UnsealReport
from vaultpilot.crypto.decrypt import GpgDecryptor, RsaKeyDecryptor, ShareDecryptor
from vaultpilot.crypto.keys import load_identities
from vaultpilot.crypto.tls import load_tls_material
from vaultpilot.errors import ConsensusError, VaultPilotError
from vaultpilot.models import RecipientIdentity, SealState

console = Console()


def _load(config_path: str | None) -> VaultPilotConfig:
    if config_path:
        return load_config(Path(config_path))
    return load_config()


def _identities(keys: str) -> list[RecipientIdentity]:
    paths = [k.strip() for k in keys.split(",") if k.strip()]
    try:
        return load_identities(paths)
    except (OSError, ValueError) as e:
        console.print(f"[red]Cannot load recipient keys: {e}[/red]")
        raise typer.Exit(1) from e


def _run(coro: Coroutine[Any, Any, None]) -> None:
    """Run *coro*, turning vaultpilot errors into a report and exit code 1."""
    try:
        asyncio.run(coro)
    except ConfigError as e:
        console.print(f"[red]Configuration error: {e}[/red]")
        raise typer.Exit(1) from e
    except VaultPilotError as e:
        console.print(f"[red]✗ {e}[/red]")
        if e.partial is not None:
            console.print("\n[bold]Completed before the failure:[/bold]")
            _print_report(e.partial)
        console.print("\nEvery step is safe to re-run once the cause is fixed.")
        raise typer.Exit(1) from e


def _state(state: SealState) -> str:
    if state == SealState.UNSEALED:
        return "[green]unsealed[/green]"
    if state == SealState.SEALED:
        return "[yellow]sealed[/yellow]"
    return "[red]unknown[/red]"


def _distribution_table(report: DistributionReport) -> Table:
    table = Table(title="Encrypted Shares")
    table.add_column("#", style="cyan")
    table.add_column("Recipient", style="white")
    table.add_column("Fingerprint", style="magenta")
    table.add_column("Artifact", style="blue")
    table.add_column("Status", style="white")
    for artifact in report.delivered:
        table.add_row(
            str(artifact.index),
            artifact.recipient,
            artifact.fingerprint[:16],
            artifact.path,
            "kept" if artifact.skipped else "[green]created[/green]",
        )
    return table


def _unseal_table(report: UnsealReport) -> Table:
    table = Table(title="Unseal Progress")
    table.add_column("Node", style="cyan")
    table.add_column("State", style="white")
    table.add_column("Progress", style="yellow")
    table.add_column("Share", style="white")
    for result in report.results:
        progress = "-" if result.state == SealState.UNSEALED else f"{result.progress}/{result.threshold}"
        table.add_row(
            str(result.node),
            _state(result.state),
            progress,
            "applied" if result.applied else "skipped",
        )
    return table


def _rollout_table(report: RolloutReport) -> Table:
    table = Table(title=f"Secure Config v{report.version}")
    table.add_column("Node", style="cyan")
    table.add_column("Delivered", style="white")
    table.add_column("Restarted", style="white")
    table.add_column("Version", style="magenta")
    for result in report.nodes:
        table.add_row(
            str(result.node),
            "[green]yes[/green]" if result.delivered else "-",
            "[green]yes[/green]" if result.restarted else "-",
            str(result.version) if result.version else "-",
        )
    return table


def _versions_table(report: ReconciliationReport) -> Table:
    table = Table(title="Secure Config Versions")
    table.add_column("Node", style="cyan")
    table.add_column("Version", style="magenta")
    table.add_column("Fingerprint", style="white")
    table.add_column("Pending", style="yellow")
    lagging = set(report.lagging)
    for entry in report.nodes:
        version = str(entry.version) if entry.version else "never secured"
        if entry.node in lagging:
            version = f"[red]{version}[/red]"
        table.add_row(
            str(entry.node),
            version,
            entry.fingerprint[:16] if entry.fingerprint else "-",
            str(entry.pending_version) if entry.pending_version else "-",
        )
    return table


def _print_report(report: Any) -> None:
    if isinstance(report, DistributionReport):
        console.print(_distribution_table(report))
    elif isinstance(report, UnsealReport):
        console.print(_unseal_table(report))
    elif isinstance(report, RolloutReport):
        console.print(_rollout_table(report))
    elif isinstance(report, ConsensusStatus):
        console.print(f"Consensus peers visible: {report.peer_count}")
    elif isinstance(report, BootstrapReport):
        steps = ", ".join(report.completed) or "none"
        console.print(f"Steps completed: {steps}")
        if report.rollout:
            console.print(_rollout_table(report.rollout))
        if report.distribution:
            console.print(_distribution_table(report.distribution))
        if report.unseal:
            console.print(_unseal_table(report.unseal[-1]))


def _decryptor(
    config: VaultPilotConfig,
    private_key: str | None,
    passphrase: str | None,
    gpg_homedir: str | None = None,
) -> ShareDecryptor:
    if private_key:
        return RsaKeyDecryptor(private_key, passphrase.encode("utf-8") if passphrase else None)
    return GpgDecryptor(homedir=gpg_homedir, timeout=config.bootstrap.decrypt_timeout)


async def _async_init(
    keys: str, threshold: int | None, config_path: str | None, local: bool
) -> None:
    """Async implementation of init."""
    config = _load(config_path)
    identities = _identities(keys)

    cluster = Cluster(config, local=local)
    try:
        console.print("[bold]Initializing vault...[/bold]\n")
        effective, report = await initialize_cluster(
            cluster.engine(cluster.nodes[0]),
            cluster.consensus,
            cluster.store,
            identities,
            threshold,
            kv_prefix=config.consul.kv_prefix,
        )
    finally:
        await cluster.close()

    console.print(_distribution_table(report))
    console.print(
        f"\n[green]✓[/green] Vault initialized: {len(identities)} shares, "
        f"{effective} required to unseal"
    )
    console.print("Send each .key file to its owner. Nobody else can decrypt it.")
    console.print(
        f"Root credential recorded in [cyan]{cluster.store.directory}[/cyan]; "
        "revoke it once you have other credentials"
    )


def init_command(
    keys: str, threshold: int | None = None, config_path: str | None = None, local: bool = False
) -> None:
    """Initialize the cluster and distribute the shares."""
    _run(_async_init(keys, threshold, config_path, local))


async def _async_unseal(
    key_file: str,
    private_key: str | None,
    passphrase: str | None,
    gpg_homedir: str | None,
    config_path: str | None,
    local: bool,
) -> None:
    """Async implementation of unseal."""
    config = _load(config_path)
    cluster = Cluster(config, local=local)
    try:
        coordinator = UnsealCoordinator(
            cluster.nodes,
            cluster.engines(),
            _decryptor(config, private_key, passphrase, gpg_homedir),
        )
        report = await coordinator.unseal_artifact(key_file)
    finally:
        await cluster.close()

    console.print(_unseal_table(report))
    if report.complete:
        console.print(f"\n[green]✓[/green] All {len(report.results)} nodes unsealed")
    else:
        console.print(
            f"\n[yellow]{len(report.unsealed)}/{len(report.results)} nodes unsealed[/yellow]; "
            "more operators need to run [cyan]vaultpilot unseal[/cyan]"
        )


def unseal_command(
    key_file: str,
    private_key: str | None = None,
    passphrase: str | None = None,
    gpg_homedir: str | None = None,
    config_path: str | None = None,
    local: bool = False,
) -> None:
    """Decrypt one share and submit it to every node."""
    _run(_async_unseal(key_file, private_key, passphrase, gpg_homedir, config_path, local))


async def _async_secure(
    tls_key: str | None,
    tls_cert: str | None,
    ca_cert: str | None,
    gossip: str | None,
    config_path: str | None,
    local: bool,
) -> None:
    """Async implementation of secure."""
    config = _load(config_path)
    material = load_tls_material(tls_cert, tls_key, ca_cert)

    cluster = Cluster(config, local=local)
    try:
        console.print("[bold]Securing cluster...[/bold]\n")
        manager = SecureRolloutManager(cluster.nodes, cluster.transport, config.rollout)
        report = await manager.secure(material.key, material.cert, material.ca, gossip)
    finally:
        await cluster.close()

    console.print(_rollout_table(report))
    if report.gossip_generated:
        console.print("Gossip key generated on the cluster")
    if report.restarts:
        console.print(
            f"\n[green]✓[/green] Secure config v{report.version} applied; "
            "restarted nodes are sealed and must be unsealed again"
        )
        if not cluster.simulated:
            console.print(
                "Vault now serves TLS: use https:// node addresses and set "
                "engine.ca_cert to the CA certificate"
            )
    elif any(n.delivered for n in report.nodes):
        console.print(f"\n[green]✓[/green] Secure config v{report.version} restored on disk")
    else:
        console.print(f"\n[green]✓[/green] All nodes already at secure config v{report.version}")


def secure_command(
    tls_key: str | None = None,
    tls_cert: str | None = None,
    ca_cert: str | None = None,
    gossip: str | None = None,
    config_path: str | None = None,
    local: bool = False,
) -> None:
    """Roll out gossip encryption and TLS."""
    _run(_async_secure(tls_key, tls_cert, ca_cert, gossip, config_path, local))


async def _async_policy(
    name: str, document: str, token: str | None, config_path: str | None, local: bool
) -> None:
    """Async implementation of policy."""
    config = _load(config_path)
    text = Path(document).read_text()

    cluster = Cluster(config, local=local)
    if token is None:
        record = read_root_credential(cluster.store)
        token = record.token if record else None
    try:
        await cluster.engine(cluster.nodes[0], token).write_policy(name, text)
    finally:
        await cluster.close()

    console.print(f"[green]✓[/green] Policy [cyan]{name}[/cyan] written")


def policy_command(
    name: str,
    document: str,
    token: str | None = None,
    config_path: str | None = None,
    local: bool = False,
) -> None:
    """Create or replace a policy."""
    if not Path(document).is_file():
        console.print(f"[red]Policy document not found: {document}[/red]")
        raise typer.Exit(1)
    _run(_async_policy(name, document, token, config_path, local))


async def _async_status(config_path: str | None = None, local: bool = False) -> None:
    """Async implementation of status."""
    config = _load(config_path)
    cluster = Cluster(config, local=local)

    console.print("[bold]Checking cluster status...[/bold]\n")
    try:
        statuses = await UnsealCoordinator(cluster.nodes, cluster.engines()).seal_status()
        versions = await SecureRolloutManager(
            cluster.nodes, cluster.transport, config.rollout
        ).reconcile()
        try:
            consensus = await cluster.consensus.status()
        except ConsensusError:
            consensus = None
    finally:
        await cluster.close()

    table = Table(title="Cluster Status")
    table.add_column("Node", style="cyan")
    table.add_column("Name", style="white")
    table.add_column("Address", style="blue")
    table.add_column("Seal", style="white")
    table.add_column("Progress", style="yellow")
    table.add_column("Secure Config", style="magenta")

    for node in cluster.nodes:
        status = statuses[node.index]
        if status is None:
            seal, progress = _state(SealState.UNKNOWN), "-"
        elif not status.initialized:
            seal, progress = "[yellow]not initialized[/yellow]", "-"
        else:
            seal = _state(status.state)
            progress = f"{status.progress}/{status.threshold}" if status.sealed else "-"
        table.add_row(
            str(node.index),
            node.name,
            node.address,
            seal,
            progress,
            f"v{node.config_version}" if node.config_version else "-",
        )

    console.print(table)

    unsealed = sum(1 for node in cluster.nodes if node.seal_state == SealState.UNSEALED)
    console.print(f"\n[bold]Summary:[/bold] {unsealed}/{len(cluster.nodes)} nodes unsealed")
    if consensus is None:
        console.print("[red]Consensus backend unreachable[/red]")
    else:
        console.print(
            f"Consensus: {consensus.peer_count + 1}/{len(cluster.nodes)} members, "
            f"leader {consensus.leader or 'none'}"
        )
    if versions.target_version and not versions.converged:
        console.print(f"[yellow]Secure config diverged on nodes {versions.lagging}[/yellow]")


def status_command(config_path: str | None = None, local: bool = False) -> None:
    """Show cluster status."""
    _run(_async_status(config_path, local))


async def _async_verify(config_path: str | None = None, local: bool = False) -> None:
    """Async implementation of verify."""
    config = _load(config_path)
    cluster = Cluster(config, local=local)
    try:
        report = await SecureRolloutManager(
            cluster.nodes, cluster.transport, config.rollout
        ).reconcile()
    finally:
        await cluster.close()

    console.print(_versions_table(report))
    if report.converged:
        console.print(f"\n[green]✓[/green] All nodes at secure config v{report.target_version}")
        return
    if report.target_version == 0:
        console.print("\n[yellow]Cluster has never been secured[/yellow]")
    else:
        console.print(
            f"\n[red]✗[/red] Nodes {report.lagging} lag behind v{report.target_version}; "
            "re-run [cyan]vaultpilot secure[/cyan] with the same material"
        )
    raise typer.Exit(1)


def verify_command(config_path: str | None = None, local: bool = False) -> None:
    """Verify secure-config convergence."""
    _run(_async_verify(config_path, local))


def _parse_policies(policies: list[str]) -> dict[str, str]:
    documents: dict[str, str] = {}
    for spec in policies:
        name, sep, path = spec.partition("=")
        if not sep or not name or not path:
            console.print(f"[red]Invalid --policy {spec!r}; expected NAME=PATH[/red]")
            raise typer.Exit(1)
        try:
            documents[name] = Path(path).read_text()
        except OSError as e:
            console.print(f"[red]Cannot read policy {path}: {e}[/red]")
            raise typer.Exit(1) from e
    return documents


async def _async_bootstrap(
    keys: str,
    threshold: int | None,
    private_keys: list[str],
    gpg: bool,
    secure_material: SecureMaterial | None,
    policies: dict[str, str],
    demo: bool,
    config_path: str | None,
    local: bool,
) -> None:
    """Async implementation of bootstrap."""
    config = _load(config_path)
    identities = _identities(keys)

    decryptors: dict[str, ShareDecryptor] = {}
    for path in private_keys:
        # the public key <name>.pem pairs with <name>.private.pem
        public_name = Path(path).name.replace(".private.pem", ".pem")
        decryptors[public_name] = RsaKeyDecryptor(path)
    if gpg:
        for identity in identities:
            decryptors.setdefault(
                identity.name, GpgDecryptor(timeout=config.bootstrap.decrypt_timeout)
            )

    cluster = Cluster(config, local=local)
    try:
        console.print(f"[bold]Bootstrapping {len(cluster.nodes)}-node cluster...[/bold]\n")
        sequencer = ClusterBootstrapSequencer(
            nodes=cluster.nodes,
            launcher=cluster.launcher,
            consensus=cluster.consensus,
            transport=cluster.transport,
            engine_factory=cluster.engine,
            store=cluster.store,
            config=config,
        )
        report = await sequencer.run(
            identities,
            threshold=threshold,
            secure_material=secure_material,
            decryptors=decryptors,
            policies=policies,
            demo=demo,
        )
    finally:
        await cluster.close()

    _print_report(report)
    if report.unsealed:
        console.print("\n[green]✓[/green] Cluster bootstrapped and unsealed")
    else:
        console.print(
            "\n[green]✓[/green] Cluster initialized; share holders must now run "
            "[cyan]vaultpilot unseal <their .key file>[/cyan]"
        )


def bootstrap_command(
    keys: str,
    threshold: int | None = None,
    private_keys: list[str] | None = None,
    gpg: bool = False,
    tls_key: str | None = None,
    tls_cert: str | None = None,
    ca_cert: str | None = None,
    gossip: str | None = None,
    policies: list[str] | None = None,
    demo: bool = False,
    config_path: str | None = None,
    local: bool = False,
) -> None:
    """Run the full bootstrap sequence."""
    secure_material = None
    if tls_key or tls_cert:
        try:
            material = load_tls_material(tls_cert, tls_key, ca_cert)
        except VaultPilotError as e:
            console.print(f"[red]✗ {e}[/red]")
            raise typer.Exit(1) from e
        secure_material = SecureMaterial(
            tls_key=material.key, tls_cert=material.cert, ca_cert=material.ca, gossip_key=gossip
        )

    _run(
        _async_bootstrap(
            keys,
            threshold,
            private_keys or [],
            gpg,
            secure_material,
            _parse_policies(policies or []),
            demo,
            config_path,
            local,
        )
    )
