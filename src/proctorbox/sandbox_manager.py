"""Sandbox lifecycle manager: create, stop and sweep per-owner code-server sandboxes."""

import hashlib
import logging
import re
import shutil
import time
from pathlib import Path
from threading import Lock
from typing import Any, Dict, List, Optional

from .config import RuntimeConfig
from .errors import (
    ImageBuildFailed,
    PortResolutionFailed,
    ProctorboxError,
    StorageError,
    UnsupportedSubject,
)
from .models import SandboxRecord, SandboxStatus
from .network import PortAllocator, format_endpoint
from .registry import SandboxRegistry
from .runtime import ContainerRuntime, ContainerSpec
from .storage import MemoryRecordStore, SandboxRecordStore

logger = logging.getLogger("proctorbox.sandbox")

WORKSPACE_MOUNT = "/home/coder/project"
WORKSPACE_README = "# Welcome to your workspace\n"

OWNER_LABEL = "proctorbox.owner"
SUBJECT_LABEL = "proctorbox.subject"

_NAME_UNSAFE = re.compile(r"[^a-zA-Z0-9_.-]+")


def _safe_owner(owner_id: str) -> str:
    return _NAME_UNSAFE.sub("-", str(owner_id)).strip("-.") or "owner"


def container_name(prefix: str, owner_id: str) -> str:
    return f"{prefix}_{_safe_owner(owner_id)}_{int(time.time() * 1000)}"


def workspace_dirname(owner_id: str) -> str:
    """Directory name of an owner's workspace; distinct owners never share one."""
    digest = hashlib.sha1(str(owner_id).encode("utf-8")).hexdigest()[:8]
    return f"{_safe_owner(owner_id)}-{digest}"


def ensure_workspace_template(path: Path) -> Path:
    """Create the workspace template directory, seeded with a README."""
    path.mkdir(parents=True, exist_ok=True)
    readme = path / "README.md"
    if not readme.exists():
        readme.write_text(WORKSPACE_README)
    return path


def ensure_owner_workspace(root: Path, template: Path, owner_id: str) -> Path:
    """Return the owner's workspace, copying the template in on first use.

    The directory outlives individual sandboxes, so a replacement sandbox
    opens the owner's earlier files.
    """
    workspace = root / workspace_dirname(owner_id)
    if not workspace.exists():
        shutil.copytree(ensure_workspace_template(template), workspace)
        logger.debug(f"[{owner_id}] Seeded workspace {workspace} from {template}")
    return workspace


class SandboxLifecycleManager:
    """Creates and tears down sandboxes through a container runtime.

    All methods are blocking; the HTTP boundary runs them in worker threads.
    Per-owner operations are serialized with the registry's owner lock, so two
    concurrent ``create`` calls for one owner leave exactly one running sandbox.
    Teardown is best-effort: a sandbox the runtime refuses to remove leaves the
    registry and keeps its durable record, and ``recover`` retries it.
    """

    def __init__(
        self,
        config: RuntimeConfig,
        runtime: ContainerRuntime,
        registry: Optional[SandboxRegistry] = None,
        record_store: Optional[SandboxRecordStore] = None,
        ports: Optional[PortAllocator] = None,
        workspace_template: Optional[Path] = None,
        workspace_root: Optional[Path] = None,
    ):
        self.config = config
        self.runtime = runtime
        self.registry = registry or SandboxRegistry()
        self.record_store = record_store or MemoryRecordStore()
        self.ports = ports or PortAllocator(config.port_start, config.port_end)
        self.workspace_template = workspace_template or config.workspace_template
        if workspace_root is None and self.workspace_template:
            workspace_root = Path(self.workspace_template).parent / "workspaces"
        self.workspace_root = workspace_root
        self._build_locks: Dict[str, Lock] = {}
        self._build_locks_guard = Lock()

    # -- create ---------------------------------------------------------------

    def resolve_image(self, subject_label: str) -> str:
        image = self.config.image_for(subject_label)
        if not image:
            raise UnsupportedSubject(subject_label)
        return image

    def prepare_image(self, subject_label: str) -> str:
        """Make sure the subject's image exists locally, building it if needed."""
        image = self.resolve_image(subject_label)
        self._ensure_image(image)
        return image

    def create(self, owner_id: str, subject_label: str) -> SandboxRecord:
        image = self.resolve_image(subject_label)

        with self.registry.owner_lock(owner_id):
            stopped = self.cleanup_owner(owner_id)
            if stopped:
                logger.info(f"[{owner_id}] Replaced {stopped} existing sandbox(es)")

            try:
                port = self.ports.allocate()
            except RuntimeError as e:
                raise PortResolutionFailed(str(e)) from e

            try:
                self._ensure_image(image)
                spec = self._container_spec(owner_id, subject_label, image, port)
                container_id = self.runtime.run(spec)
            except Exception:
                self.ports.release(port)
                raise

            record = self._resolve_record(owner_id, subject_label, image, spec.name, container_id, port)

            self.registry.add(record)
            try:
                self.record_store.save(record)
            except StorageError:
                self.registry.remove(record.sandbox_id)
                self._discard(container_id, record.port)
                raise

            logger.info(f"[{owner_id}] Sandbox {container_id[:12]} running at {record.endpoint} ({image})")
            return record

    def _build_lock(self, image: str) -> Lock:
        with self._build_locks_guard:
            return self._build_locks.setdefault(image, Lock())

    def _ensure_image(self, image: str) -> None:
        if self.runtime.image_exists(image):
            return
        with self._build_lock(image):
            # another create may have built it while we waited
            if self.runtime.image_exists(image):
                return
            logger.info(f"Image {image} missing locally, building from {self.config.build_context}")
            try:
                self.runtime.build_image(image, Path(self.config.build_context))
            except ImageBuildFailed:
                logger.error(f"Build of image {image} failed")
                raise
            if not self.runtime.image_exists(image):
                raise ImageBuildFailed(f"Image {image} still missing after build")

    def _container_spec(self, owner_id: str, subject_label: str, image: str, port: int) -> ContainerSpec:
        container_port = self.config.container_port
        credential = self.config.shared_credential or ""
        command = [
            "code-server",
            "--bind-addr", f"0.0.0.0:{container_port}",
            "--auth", "password" if credential else "none",
            "--disable-telemetry",
            "--disable-update-check",
            WORKSPACE_MOUNT,
        ]
        volumes = {}
        if self.workspace_template:
            workspace = ensure_owner_workspace(
                Path(self.workspace_root), Path(self.workspace_template), owner_id
            )
            volumes[str(workspace.resolve())] = {"bind": WORKSPACE_MOUNT, "mode": "rw"}

        return ContainerSpec(
            image=image,
            name=container_name(self.config.name_prefix, owner_id),
            container_port=container_port,
            host_port=port,
            environment={
                "PASSWORD": credential,
                "SUDO_PASSWORD": credential,
                "DEFAULT_WORKSPACE": WORKSPACE_MOUNT,
            },
            command=command,
            labels={OWNER_LABEL: str(owner_id), SUBJECT_LABEL: subject_label},
            volumes=volumes,
            auto_remove=True,
        )

    def _resolve_record(
        self,
        owner_id: str,
        subject_label: str,
        image: str,
        name: str,
        container_id: str,
        port: int,
    ) -> SandboxRecord:
        """Read the host binding back from the runtime; never assume it."""
        try:
            host_port = self.runtime.host_port(container_id, self.config.container_port)
        except ProctorboxError:
            self._discard(container_id, port)
            raise

        if host_port is None:
            self._discard(container_id, port)
            raise PortResolutionFailed(
                f"Runtime reported no host binding for {self.config.container_port}/tcp on {container_id[:12]}"
            )

        if host_port != port:
            logger.warning(f"[{owner_id}] Runtime bound port {host_port} instead of {port}")
            self.ports.release(port)
            self.ports.reserve(host_port)

        return SandboxRecord(
            owner_id=owner_id,
            sandbox_id=container_id,
            endpoint=format_endpoint(self.config.host, host_port),
            subject_label=subject_label,
            image=image,
            name=name,
            status=SandboxStatus.RUNNING,
        )

    def _discard(self, container_id: str, port: int) -> None:
        """Roll back a half-created sandbox."""
        try:
            self.runtime.remove(container_id, self.config.stop_timeout)
        except ProctorboxError as e:
            logger.error(f"Rollback of {container_id[:12]} failed: {e}")
        self.ports.release(port)

    # -- stop -----------------------------------------------------------------

    def stop(self, sandbox_id: str) -> bool:
        """Stop and remove one sandbox. Unknown ids are a successful no-op.

        Returns True if a tracked sandbox was torn down. A removal the runtime
        refuses is logged and returns False.
        """
        record = self.registry.get(sandbox_id)
        if record is None:
            self._forget(sandbox_id)
            logger.debug(f"Sandbox {sandbox_id[:12]} not tracked, nothing to stop")
            return False

        with self.registry.owner_lock(record.owner_id):
            record = self.registry.get(sandbox_id)
            if record is None:
                return False
            return self._teardown(record)

    def _teardown(self, record: SandboxRecord) -> bool:
        self.registry.update_status(record.sandbox_id, SandboxStatus.STOPPING)
        try:
            gone = self.runtime.remove(record.sandbox_id, self.config.stop_timeout)
        except ProctorboxError as e:
            # the durable record stays behind for recover()
            self.registry.remove(record.sandbox_id)
            record.status = SandboxStatus.ORPHANED
            self.ports.release(record.port)
            logger.error(f"[{record.owner_id}] Removal of {record.sandbox_id[:12]} failed, left for recovery: {e}")
            return False

        self.registry.remove(record.sandbox_id)
        record.status = SandboxStatus.STOPPED
        self.ports.release(record.port)
        self._forget(record.sandbox_id)
        if gone:
            logger.info(f"[{record.owner_id}] Sandbox {record.sandbox_id[:12]} stopped")
        else:
            logger.info(f"[{record.owner_id}] Sandbox {record.sandbox_id[:12]} was already gone")
        return True

    def _forget(self, sandbox_id: str) -> None:
        try:
            self.record_store.delete(sandbox_id)
        except StorageError as e:
            logger.error(f"Could not delete durable record of {sandbox_id[:12]}: {e}")

    def cleanup_owner(self, owner_id: str) -> int:
        """Tear down every tracked sandbox of ``owner_id``; returns how many were removed.

        Failures are logged and skipped. Afterwards the owner has no registry
        entries either way, so a following ``create`` is never blocked.
        """
        with self.registry.owner_lock(owner_id):
            records = self.registry.for_owner(owner_id)
            stopped = sum(1 for record in records if self._teardown(record))
            if stopped < len(records):
                logger.warning(f"[{owner_id}] {len(records) - stopped} sandbox(es) could not be removed")
            return stopped

    def cleanup_all(self) -> Dict[str, int]:
        """Process shutdown sweep. Logs and continues past individual failures."""
        records = self.registry.all()
        failed = 0
        for record in records:
            try:
                self.runtime.remove(record.sandbox_id, self.config.stop_timeout)
                self.record_store.delete(record.sandbox_id)
            except Exception as e:
                failed += 1
                logger.error(f"[{record.owner_id}] Shutdown removal of {record.sandbox_id[:12]} failed: {e}")
            finally:
                self.registry.remove(record.sandbox_id)
                self.ports.release(record.port)

        if records:
            logger.info(f"Cleanup sweep: {len(records) - failed}/{len(records)} sandbox(es) removed")
        return {"total": len(records), "stopped": len(records) - failed, "failed": failed}

    # -- recovery & queries ---------------------------------------------------

    def recover(self) -> List[SandboxRecord]:
        """Tear down sandboxes left behind by a previous process."""
        recovered = []
        for record in self.record_store.load_all():
            if record.sandbox_id in self.registry:
                continue
            try:
                self.runtime.remove(record.sandbox_id, self.config.stop_timeout)
            except ProctorboxError as e:
                logger.error(f"[{record.owner_id}] Could not remove orphan {record.sandbox_id[:12]}: {e}")
                continue
            self.record_store.delete(record.sandbox_id)
            recovered.append(record)
            logger.info(f"[{record.owner_id}] Removed orphaned sandbox {record.sandbox_id[:12]}")
        return recovered

    def get(self, sandbox_id: str) -> Optional[SandboxRecord]:
        return self.registry.get(sandbox_id)

    def find_by_owner(self, owner_id: str) -> Optional[SandboxRecord]:
        return self.registry.running_for(owner_id)

    def list(self) -> List[SandboxRecord]:
        return sorted(self.registry.all(), key=lambda r: r.created_at)

    def status(self) -> List[Dict[str, Any]]:
        return [r.to_dict() for r in self.list()]
