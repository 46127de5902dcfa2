"""Container runtime client used by the sandbox lifecycle manager."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Protocol

import docker
import requests
from docker.errors import APIError, BuildError, DockerException, ImageNotFound, NotFound

from .errors import ImageBuildFailed, RuntimeUnavailable

logger = logging.getLogger("proctorbox.runtime")


@dataclass
class ContainerSpec:
    """Everything the runtime needs to start one sandbox instance."""
    image: str
    name: str
    container_port: int
    host_port: int
    environment: dict[str, str] = field(default_factory=dict)
    command: list[str] = field(default_factory=list)
    labels: dict[str, str] = field(default_factory=dict)
    volumes: dict[str, dict[str, str]] = field(default_factory=dict)
    auto_remove: bool = True


class ContainerRuntime(Protocol):
    def ping(self) -> None:
        ...

    def image_exists(self, image: str) -> bool:
        ...

    def build_image(self, image: str, context: Path) -> None:
        ...

    def run(self, spec: ContainerSpec) -> str:
        ...

    def host_port(self, container_id: str, container_port: int) -> Optional[int]:
        ...

    def remove(self, container_id: str, stop_timeout: int = 5) -> bool:
        ...


class DockerRuntime(ContainerRuntime):
    """Docker engine runtime via the docker SDK.

    Every call goes through the client's socket timeout, so a stalled daemon
    surfaces as ``RuntimeUnavailable`` instead of hanging a request.
    """

    def __init__(self, base_url: Optional[str] = None, timeout: int = 30):
        self.base_url = base_url
        self.timeout = timeout
        self._client: Optional[docker.DockerClient] = None

    @property
    def client(self) -> docker.DockerClient:
        if self._client is None:
            try:
                if self.base_url:
                    self._client = docker.DockerClient(base_url=self.base_url, timeout=self.timeout)
                else:
                    self._client = docker.from_env(timeout=self.timeout)
            except DockerException as e:
                raise RuntimeUnavailable(f"Docker is not reachable: {e}") from e
        return self._client

    def ping(self) -> None:
        try:
            self.client.ping()
        except (DockerException, requests.exceptions.RequestException) as e:
            raise RuntimeUnavailable(f"Docker ping failed: {e}") from e

    def image_exists(self, image: str) -> bool:
        try:
            self.client.images.get(image)
            return True
        except ImageNotFound:
            return False
        except requests.exceptions.RequestException as e:
            raise RuntimeUnavailable(f"Docker image lookup failed: {e}") from e

    def build_image(self, image: str, context: Path) -> None:
        dockerfile = context / image
        if not dockerfile.exists():
            dockerfile = context / "Dockerfile"
        if not dockerfile.exists():
            raise ImageBuildFailed(f"No build context for image {image} in {context}")

        logger.info(f"Building image {image} from {dockerfile}")
        try:
            _, build_logs = self.client.images.build(
                path=str(context),
                dockerfile=dockerfile.name,
                tag=image,
                rm=True,
            )
        except BuildError as e:
            tail = " | ".join(
                str(chunk.get("stream", "")).strip()
                for chunk in list(e.build_log)[-5:]
                if isinstance(chunk, dict)
            )
            raise ImageBuildFailed(f"Build of {image} failed: {e.msg} {tail}".strip()) from e
        except APIError as e:
            raise ImageBuildFailed(f"Build of {image} failed: {e.explanation or e}") from e
        except requests.exceptions.RequestException as e:
            raise RuntimeUnavailable(f"Docker build request failed: {e}") from e

        for chunk in build_logs:
            line = str(chunk.get("stream", "")).strip() if isinstance(chunk, dict) else ""
            if line:
                logger.debug(f"[build {image}] {line}")

    def run(self, spec: ContainerSpec) -> str:
        try:
            container = self.client.containers.run(
                image=spec.image,
                name=spec.name,
                command=spec.command or None,
                environment=spec.environment,
                labels=spec.labels,
                volumes=spec.volumes or None,
                ports={f"{spec.container_port}/tcp": spec.host_port},
                tty=True,
                detach=True,
                auto_remove=spec.auto_remove,
            )
        except (APIError, ImageNotFound) as e:
            raise RuntimeUnavailable(f"Docker could not start {spec.name}: {e}") from e
        except requests.exceptions.RequestException as e:
            raise RuntimeUnavailable(f"Docker run request failed: {e}") from e
        return container.id

    def host_port(self, container_id: str, container_port: int) -> Optional[int]:
        try:
            container = self.client.containers.get(container_id)
            container.reload()
        except NotFound:
            return None
        except requests.exceptions.RequestException as e:
            raise RuntimeUnavailable(f"Docker inspect failed: {e}") from e

        ports = (container.attrs.get("NetworkSettings") or {}).get("Ports") or {}
        bindings = ports.get(f"{container_port}/tcp") or []
        for binding in bindings:
            host_port = binding.get("HostPort")
            if host_port:
                return int(host_port)
        return None

    def remove(self, container_id: str, stop_timeout: int = 5) -> bool:
        """Stop and remove a container. Returns False if it was already gone."""
        try:
            container = self.client.containers.get(container_id)
        except NotFound:
            return False
        except requests.exceptions.RequestException as e:
            raise RuntimeUnavailable(f"Docker lookup failed: {e}") from e

        try:
            container.stop(timeout=stop_timeout)
        except NotFound:
            return False
        except APIError as e:
            logger.debug(f"Stop of {container_id[:12]} reported: {e}")

        try:
            container.remove(force=True)
        except NotFound:
            # auto-remove already reaped it
            pass
        except APIError as e:
            if e.status_code != 409:
                raise RuntimeUnavailable(f"Docker remove failed: {e}") from e
        return True
