"""Docker transport.

Node containers are driven through the Docker SDK:

- ``put_archive`` to deliver files
- ``exec_run`` to run commands (``mkdir``, ``consul keygen``)
- ``get_archive`` to read files back
- ``restart`` to apply new configuration

Standing the cluster up is a ``docker compose up -d --scale`` call; the SDK
has no Compose support, so the launcher runs the CLI.
"""

import asyncio
import io
import logging
import posixpath
import tarfile
from pathlib import Path
from typing import Any

import docker
from docker.errors import DockerException, NotFound

from vaultpilot.errors import DeliveryFailed, RestartFailed, TransportError
from vaultpilot.models import ClusterNode
from vaultpilot.transport.base import ClusterLauncher, NodeTransport

logger = logging.getLogger(__name__)


async def run_command(argv: list[str], timeout: float) -> tuple[int, str, str]:
    """Run *argv* and collect its output.

    Returns:
        Tuple of (exit code, stdout, stderr)

    Raises:
        TransportError: If the binary is missing or the command times out
    """
    try:
        process = await asyncio.create_subprocess_exec(
            *argv,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError:
        raise TransportError(f"{argv[0]} binary not found") from None

    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except TimeoutError:
        process.kill()
        await process.wait()
        raise TransportError(f"{' '.join(argv[:3])} timed out after {timeout} seconds") from None

    return (
        process.returncode,
        stdout.decode("utf-8", errors="replace"),
        stderr.decode("utf-8", errors="replace"),
    )


def _pack(local_path: Path, name: str) -> bytes:
    """Tar a single file under *name*, as ``put_archive`` expects."""
    archive = io.BytesIO()
    with tarfile.open(fileobj=archive, mode="w") as tar:
        tar.add(str(local_path), arcname=name)
    return archive.getvalue()


def _unpack(chunks: Any) -> str | None:
    """Contents of the first regular file in a ``get_archive`` stream."""
    archive = io.BytesIO(b"".join(chunks))
    with tarfile.open(fileobj=archive, mode="r") as tar:
        member = tar.next()
        if member is None or not member.isfile():
            return None
        extracted = tar.extractfile(member)
        if extracted is None:
            return None
        return extracted.read().decode("utf-8")


class DockerTransport(NodeTransport):
    """Transport for containers named after the node."""

    def __init__(self, client: Any = None, timeout: float = 120.0, stop_timeout: int = 10):
        """Initialize the transport.

        Args:
            client: Docker client; connects with ``docker.from_env()`` on first use
            timeout: Docker API call timeout in seconds
            stop_timeout: Seconds a container gets to stop before it is killed on restart
        """
        self._docker: Any = client
        self.timeout = timeout
        self.stop_timeout = stop_timeout

    def _get_client(self) -> Any:
        """Get or create the Docker client.

        Raises:
            TransportError: If the Docker daemon is not available
        """
        if self._docker is None:
            try:
                self._docker = docker.from_env(timeout=int(self.timeout))
            except DockerException as e:
                raise TransportError(f"Docker daemon not available: {e}") from e
            logger.info("Connected to Docker daemon")
        return self._docker

    def _container(self, node: ClusterNode) -> Any:
        try:
            return self._get_client().containers.get(node.name)
        except NotFound:
            raise TransportError(f"Container {node.name} not found", node=node.index) from None
        except DockerException as e:
            raise TransportError(f"Cannot inspect {node.name}: {e}", node=node.index) from e

    async def deliver(self, node: ClusterNode, local_path: Path, remote_path: str) -> None:
        remote_dir, name = posixpath.split(remote_path)
        try:
            container = self._container(node)
            if remote_dir:
                await self.exec(node, ["mkdir", "-p", remote_dir])
            container.put_archive(remote_dir or "/", _pack(local_path, name))
        except TransportError as e:
            raise DeliveryFailed(str(e), node=node.index, step="deliver") from e
        except DockerException as e:
            raise DeliveryFailed(
                f"Copy to {node.name}:{remote_path} failed: {e}",
                node=node.index,
                step="deliver",
            ) from e
        logger.debug("Delivered %s to %s:%s", local_path.name, node.name, remote_path)

    async def restart(self, node: ClusterNode) -> None:
        try:
            self._container(node).restart(timeout=self.stop_timeout)
        except TransportError as e:
            raise RestartFailed(str(e), node=node.index, step="restart") from e
        except DockerException as e:
            raise RestartFailed(
                f"Restart of {node.name} failed: {e}", node=node.index, step="restart"
            ) from e
        logger.info("Restarted %s", node.name)

    async def exec(self, node: ClusterNode, argv: list[str]) -> str:
        container = self._container(node)
        try:
            code, (stdout, stderr) = container.exec_run(argv, demux=True)
        except DockerException as e:
            raise TransportError(
                f"{' '.join(argv)} on {node.name} failed: {e}", node=node.index
            ) from e

        if code != 0:
            detail = (stderr or b"").decode("utf-8", errors="replace").strip()
            raise TransportError(
                f"{' '.join(argv)} on {node.name} exited {code}: {detail}",
                node=node.index,
            )
        return (stdout or b"").decode("utf-8", errors="replace")

    async def read_file(self, node: ClusterNode, remote_path: str) -> str | None:
        container = self._container(node)
        try:
            chunks, _ = container.get_archive(remote_path)
            return _unpack(chunks)
        except NotFound:
            return None
        except (DockerException, tarfile.TarError) as e:
            raise TransportError(
                f"Cannot read {node.name}:{remote_path}: {e}", node=node.index
            ) from e


class ComposeLauncher(ClusterLauncher):
    """Stands the cluster up with Docker Compose."""

    def __init__(
        self,
        compose_file: str = "docker-compose.yml",
        service: str = "consul-vault",
        docker_binary: str = "docker",
        timeout: float = 600.0,
        project: str | None = None,
    ):
        self.compose_file = compose_file
        self.project = project
        self.service = service
        self.docker = docker_binary
        self.timeout = timeout

    async def launch(self, count: int) -> None:
        argv = [
            self.docker,
            "compose",
            "-f",
            self.compose_file,
            *(["-p", self.project] if self.project else []),
            "up",
            "-d",
            "--scale",
            f"{self.service}={count}",
        ]
        code, _, stderr = await run_command(argv, self.timeout)
        if code != 0:
            raise TransportError(f"docker compose up failed: {stderr.strip()}", step="launch")
        logger.info("Compose service %s scaled to %d", self.service, count)
