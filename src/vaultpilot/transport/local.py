"""Directory-backed transport for simulation mode.

Each node is a directory under *root*; a remote path ``/etc/secure/x`` on
node ``n`` lands at ``<root>/<n.name>/etc/secure/x``.  Restarts are
recorded and forwarded to an optional hook (the in-memory engine reseals
the node).
"""

import base64
import logging
import secrets
import shutil
from collections.abc import Callable
from pathlib import Path

from vaultpilot.errors import DeliveryFailed, TransportError
from vaultpilot.models import ClusterNode
from vaultpilot.transport.base import ClusterLauncher, NodeTransport

logger = logging.getLogger(__name__)


def _gossip_keygen() -> str:
    return base64.b64encode(secrets.token_bytes(32)).decode("ascii") + "\n"


class LocalTransport(NodeTransport):
    """Transport over local directories."""

    def __init__(self, root: str | Path, on_restart: Callable[[int], None] | None = None):
        self.root = Path(root).expanduser()
        self.on_restart = on_restart
        self.restarts: dict[int, int] = {}
        self.commands: dict[tuple[str, ...], Callable[[], str]] = {
            ("consul", "keygen"): _gossip_keygen,
        }

    def node_dir(self, node: ClusterNode) -> Path:
        return self.root / node.name

    def _resolve(self, node: ClusterNode, remote_path: str) -> Path:
        return self.node_dir(node) / remote_path.lstrip("/")

    async def deliver(self, node: ClusterNode, local_path: Path, remote_path: str) -> None:
        if not self.node_dir(node).is_dir():
            raise DeliveryFailed(f"Node {node.name} is not running", node=node.index, step="deliver")
        target = self._resolve(node, remote_path)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(local_path, target)
        except OSError as e:
            raise DeliveryFailed(str(e), node=node.index, step="deliver") from e

    async def restart(self, node: ClusterNode) -> None:
        self.restarts[node.index] = self.restarts.get(node.index, 0) + 1
        if self.on_restart:
            self.on_restart(node.index)
        logger.info("Restarted %s", node.name)

    async def exec(self, node: ClusterNode, argv: list[str]) -> str:
        command = self.commands.get(tuple(argv))
        if command is None:
            raise TransportError(f"Unsupported command: {' '.join(argv)}", node=node.index)
        return command()

    async def read_file(self, node: ClusterNode, remote_path: str) -> str | None:
        path = self._resolve(node, remote_path)
        if not path.is_file():
            return None
        return path.read_text()


class LocalLauncher(ClusterLauncher):
    """Creates one directory per node."""

    def __init__(self, root: str | Path, names: list[str]):
        self.root = Path(root).expanduser()
        self.names = names

    async def launch(self, count: int) -> None:
        for name in self.names[:count]:
            (self.root / name).mkdir(parents=True, exist_ok=True)
        logger.info("Local cluster of %d nodes under %s", count, self.root)

    def members_up(self) -> int:
        return sum(1 for name in self.names if (self.root / name).is_dir())
