"""Configuration models for proctorbox."""

import os

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

PACKAGE_DIR = Path(__file__).resolve().parent

DEFAULT_SUBJECT_IMAGES = {
    "JavaScript": "codespace-javascript",
    "Java": "codespace-javascript",
    "C++": "codespace-javascript",
    "Python": "codespace-javascript",
}

DEFAULT_WARNING_THRESHOLDS = (300, 60, 20)


def _clean(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    v = str(value).strip()
    return v or None


def _as_bool(value: Optional[str], default: bool) -> bool:
    v = _clean(value)
    if v is None:
        return default
    return v.lower() in {"1", "true", "yes", "on"}


def parse_subject_images(raw: str) -> dict[str, str]:
    """Parse ``Subject=image,Subject=image`` into a mapping."""
    mapping: dict[str, str] = {}
    for part in raw.split(","):
        if "=" not in part:
            continue
        subject, image = part.split("=", 1)
        subject, image = subject.strip(), image.strip()
        if subject and image:
            mapping[subject] = image
    return mapping


def parse_thresholds(raw: str) -> tuple[int, ...]:
    values = {int(p) for p in raw.replace(" ", "").split(",") if p}
    return tuple(sorted((v for v in values if v > 0), reverse=True))


@dataclass
class RuntimeConfig:
    """Container runtime and sandbox image settings."""
    docker_base_url: Optional[str] = None
    client_timeout: int = 30
    call_timeout: float = 60.0
    build_timeout: float = 1800.0
    host: str = "localhost"
    container_port: int = 8080
    port_start: int = 20000
    port_end: int = 21000
    subject_images: dict[str, str] = field(default_factory=lambda: dict(DEFAULT_SUBJECT_IMAGES))
    build_context: Path = PACKAGE_DIR / "dockerfiles"
    workspace_template: Optional[Path] = None
    shared_credential: Optional[str] = None
    stop_timeout: int = 5
    name_prefix: str = "codespace"

    def image_for(self, subject_label: str) -> Optional[str]:
        if subject_label in self.subject_images:
            return self.subject_images[subject_label]
        lowered = subject_label.strip().lower()
        for subject, image in self.subject_images.items():
            if subject.lower() == lowered:
                return image
        return None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RuntimeConfig":
        cfg = cls()
        for key in (
            "docker_base_url", "client_timeout", "call_timeout", "build_timeout", "host",
            "container_port", "port_start", "port_end", "shared_credential",
            "stop_timeout", "name_prefix",
        ):
            if key in data:
                setattr(cfg, key, data[key])
        if "subject_images" in data:
            cfg.subject_images = {str(k): str(v) for k, v in data["subject_images"].items()}
        if data.get("build_context"):
            cfg.build_context = Path(data["build_context"])
        if data.get("workspace_template"):
            cfg.workspace_template = Path(data["workspace_template"])
        return cfg


@dataclass
class CaptureConfig:
    """Browser capture settings. Timeouts are in seconds."""
    viewport_width: int = 1920
    viewport_height: int = 1080
    navigation_timeout: float = 45.0
    auth_timeout: float = 15.0
    trust_dialog_timeout: float = 20.0
    trust_attempts: int = 3
    verification_timeout: float = 10.0
    verification_passes: int = 3
    settle_delay: float = 2.0
    desktop_attempts: int = 8
    desktop_poll_interval: float = 3.0
    jpeg_quality: int = 85
    max_concurrent: int = 4
    artifact_dir: Optional[Path] = None

    @property
    def worst_case_seconds(self) -> float:
        """Upper bound of one sandbox-frame capture."""
        return (
            self.navigation_timeout
            + self.auth_timeout
            + self.trust_dialog_timeout * 2
            + self.verification_timeout * self.verification_passes
            + self.settle_delay * (self.verification_passes + 2)
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CaptureConfig":
        cfg = cls()
        for key, value in data.items():
            if key == "artifact_dir":
                cfg.artifact_dir = Path(value) if value else None
            elif hasattr(cfg, key):
                setattr(cfg, key, value)
        return cfg


@dataclass
class SessionConfig:
    warning_thresholds: tuple[int, ...] = DEFAULT_WARNING_THRESHOLDS
    tick_interval: float = 1.0
    capture_interval: float = 0.0
    auto_submit: bool = True
    submit_url: Optional[str] = None
    submit_timeout: float = 10.0

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SessionConfig":
        cfg = cls()
        if "warning_thresholds" in data:
            raw = data["warning_thresholds"]
            if isinstance(raw, str):
                cfg.warning_thresholds = parse_thresholds(raw)
            else:
                cfg.warning_thresholds = tuple(sorted((int(v) for v in raw), reverse=True))
        for key in ("tick_interval", "capture_interval", "auto_submit", "submit_url", "submit_timeout"):
            if key in data:
                setattr(cfg, key, data[key])
        return cfg


@dataclass
class Settings:
    """Complete proctorbox configuration."""
    runtime: RuntimeConfig = field(default_factory=RuntimeConfig)
    capture: CaptureConfig = field(default_factory=CaptureConfig)
    session: SessionConfig = field(default_factory=SessionConfig)
    data_dir: Path = Path("./.proctorbox")
    api_host: str = "0.0.0.0"
    api_port: int = 8810
    api_token: Optional[str] = None
    log_level: str = "INFO"
    log_dir: Optional[Path] = None

    @property
    def records_path(self) -> Path:
        return self.data_dir / "sandboxes.json"

    @property
    def events_path(self) -> Path:
        return self.data_dir / "events.jsonl"

    @property
    def artifact_dir(self) -> Path:
        return self.capture.artifact_dir or (self.data_dir / "artifacts")

    @property
    def workspace_template(self) -> Path:
        return self.runtime.workspace_template or (self.data_dir / "template-workspace")

    @property
    def workspace_root(self) -> Path:
        """Parent of the per-owner workspace directories."""
        return self.data_dir / "workspaces"

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Settings":
        return cls(
            runtime=RuntimeConfig.from_dict(data.get("runtime", {}) or {}),
            capture=CaptureConfig.from_dict(data.get("capture", {}) or {}),
            session=SessionConfig.from_dict(data.get("session", {}) or {}),
            data_dir=Path(data.get("data_dir", "./.proctorbox")),
            api_host=data.get("api_host", "0.0.0.0"),
            api_port=int(data.get("api_port", 8810)),
            api_token=data.get("api_token"),
            log_level=data.get("log_level", "INFO"),
            log_dir=Path(data["log_dir"]) if data.get("log_dir") else None,
        )

    @classmethod
    def from_yaml(cls, path: Path) -> "Settings":
        with open(path) as f:
            data = yaml.safe_load(f) or {}
        return cls.from_dict(data)

    @classmethod
    def from_env(cls, env: Optional[dict[str, str]] = None, base: Optional["Settings"] = None) -> "Settings":
        """Overlay ``PROCTORBOX_*`` variables on ``base`` (or defaults)."""
        src = env if env is not None else os.environ
        s = base or cls()

        if v := _clean(src.get("PROCTORBOX_DATA_DIR")):
            s.data_dir = Path(v)
        if v := _clean(src.get("PROCTORBOX_API_HOST")):
            s.api_host = v
        if v := _clean(src.get("PROCTORBOX_API_PORT")):
            s.api_port = int(v)
        if v := _clean(src.get("PROCTORBOX_API_TOKEN")):
            s.api_token = v
        if v := _clean(src.get("PROCTORBOX_LOG_LEVEL")):
            s.log_level = v.upper()
        if v := _clean(src.get("PROCTORBOX_LOG_DIR")):
            s.log_dir = Path(v)

        rt = s.runtime
        if v := _clean(src.get("PROCTORBOX_DOCKER_URL") or src.get("DOCKER_HOST")):
            rt.docker_base_url = v
        if v := _clean(src.get("PROCTORBOX_DOCKER_TIMEOUT")):
            rt.client_timeout = int(v)
        if v := _clean(src.get("PROCTORBOX_RUNTIME_CALL_TIMEOUT")):
            rt.call_timeout = float(v)
        if v := _clean(src.get("PROCTORBOX_BUILD_TIMEOUT")):
            rt.build_timeout = float(v)
        if v := _clean(src.get("PROCTORBOX_SANDBOX_HOST")):
            rt.host = v
        if v := _clean(src.get("PROCTORBOX_PORT_START")):
            rt.port_start = int(v)
        if v := _clean(src.get("PROCTORBOX_PORT_END")):
            rt.port_end = int(v)
        if v := _clean(src.get("PROCTORBOX_SUBJECT_IMAGES")):
            rt.subject_images = parse_subject_images(v)
        if v := _clean(src.get("PROCTORBOX_BUILD_CONTEXT")):
            rt.build_context = Path(v)
        if v := _clean(src.get("PROCTORBOX_WORKSPACE_TEMPLATE")):
            rt.workspace_template = Path(v)
        if v := _clean(src.get("PROCTORBOX_SANDBOX_PASSWORD")):
            rt.shared_credential = v

        cap = s.capture
        if v := _clean(src.get("PROCTORBOX_NAVIGATION_TIMEOUT")):
            cap.navigation_timeout = float(v)
        if v := _clean(src.get("PROCTORBOX_AUTH_TIMEOUT")):
            cap.auth_timeout = float(v)
        if v := _clean(src.get("PROCTORBOX_MAX_CONCURRENT_CAPTURES")):
            cap.max_concurrent = int(v)
        if v := _clean(src.get("PROCTORBOX_ARTIFACT_DIR")):
            cap.artifact_dir = Path(v)

        ses = s.session
        if v := _clean(src.get("PROCTORBOX_WARNING_THRESHOLDS")):
            ses.warning_thresholds = parse_thresholds(v)
        if v := _clean(src.get("PROCTORBOX_CAPTURE_INTERVAL")):
            ses.capture_interval = float(v)
        ses.auto_submit = _as_bool(src.get("PROCTORBOX_AUTO_SUBMIT"), ses.auto_submit)
        if v := _clean(src.get("PROCTORBOX_SUBMIT_URL")):
            ses.submit_url = v

        return s

    def to_dict(self) -> dict[str, Any]:
        return {
            "data_dir": str(self.data_dir),
            "api_host": self.api_host,
            "api_port": self.api_port,
            "log_level": self.log_level,
            "runtime": {
                "host": self.runtime.host,
                "container_port": self.runtime.container_port,
                "port_start": self.runtime.port_start,
                "port_end": self.runtime.port_end,
                "subject_images": dict(self.runtime.subject_images),
                "build_context": str(self.runtime.build_context),
            },
            "capture": {
                "viewport_width": self.capture.viewport_width,
                "viewport_height": self.capture.viewport_height,
                "navigation_timeout": self.capture.navigation_timeout,
                "max_concurrent": self.capture.max_concurrent,
            },
            "session": {
                "warning_thresholds": list(self.session.warning_thresholds),
                "capture_interval": self.session.capture_interval,
                "auto_submit": self.session.auto_submit,
            },
        }


def load_settings(path: str | Path | None = None, env: Optional[dict[str, str]] = None) -> Settings:
    """Load settings from an optional YAML file, then apply environment overrides."""
    base = None
    if path is not None:
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")
        base = Settings.from_yaml(path)
    elif v := _clean((env if env is not None else os.environ).get("PROCTORBOX_CONFIG")):
        base = Settings.from_yaml(Path(v))
    return Settings.from_env(env, base=base)
