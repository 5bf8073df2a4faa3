"""Configuration management for vortex-mesh.

This module handles loading configuration from multiple sources with the following priority:
1. CLI arguments (handled by caller)
2. Environment variables (VORTEX_*)
3. TOML configuration file
4. Default values (production environment)

Configuration files are loaded from:
- vortex-mesh.toml in current working directory
- ~/.vortex-mesh/config.toml

Environment selection via VORTEX_ENV (development, staging, production).
Defaults to production if not set.
"""

import json
import os
import tomllib
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from loguru import logger

# Default network relay endpoint
DEFAULT_RELAY_URL = "ws://localhost:8765"

# Public STUN servers, always present unless VORTEX_ICE_SERVERS replaces the list
DEFAULT_STUN_SERVERS = [
    "stun:stun.l.google.com:19302",
    "stun:stun1.l.google.com:19302",
]

METERED_TURN_HOST = "global.relay.metered.ca"
METERED_TURN_USERNAME = "openrelayproject"

# Valid environment names
VALID_ENVIRONMENTS = {"development", "staging", "production"}

TRUE_VALUES = {"1", "true", "yes", "on"}
FALSE_VALUES = {"0", "false", "no", "off"}


@dataclass
class NoiseGateSettings:
    """Tunable noise gate constants.

    Attributes:
        open_ratio: Gate opens when RMS exceeds threshold * open_ratio.
        close_ratio: Gate may close when RMS drops below threshold * close_ratio.
        hold_time: Seconds the gate stays open after the last loud sample.
        attack_time: Time constant (seconds) of the opening ramp.
        release_time: Time constant (seconds) of the closing ramp.
        sample_interval: Seconds between RMS evaluations.
    """

    open_ratio: float = 1.1
    close_ratio: float = 0.8
    hold_time: float = 0.25
    attack_time: float = 0.003
    release_time: float = 0.06
    sample_interval: float = 0.05


@dataclass
class DenoiseSettings:
    """Tunable spectral denoiser constants.

    Attributes:
        learning_frames: Quiet frames used to seed the noise profile.
        adaptive_rate: Blend factor for noise profile updates during silence.
        min_update_interval: Minimum frames between adaptive updates.
        voice_threshold: RMS below which a frame may count as silence.
        silence_rms_ratio: Silence requires RMS < voice_threshold * ratio.
        silence_zcr: Silence requires zero-crossing rate below this.
        silence_centroid: Silence requires spectral centroid (Hz) below this.
        smoothing: Cross-frame smoothing factor of the Wiener gain.
        min_gain: Base gain floor, halved at high intensity.
        transient_ratio: Frame RMS over history average that counts as a transient.
        transient_history: Frames averaged for transient detection.
        transient_hold: Frames the transient attenuation stays active.
    """

    learning_frames: int = 30
    adaptive_rate: float = 0.01
    min_update_interval: int = 5
    voice_threshold: float = 0.01
    silence_rms_ratio: float = 1.5
    silence_zcr: float = 0.3
    silence_centroid: float = 2000.0
    smoothing: float = 0.9
    min_gain: float = 0.1
    transient_ratio: float = 3.0
    transient_history: int = 5
    transient_hold: int = 3


@dataclass
class ScreenShareSettings:
    """Shared screen-share bandwidth budget.

    Attributes:
        total_bitrate: Total bits per second split across viewers.
        min_bitrate: Per-viewer floor in bits per second.
        high_fps: Framerate while viewer count is at or below fps_peer_threshold.
        low_fps: Framerate above the threshold.
        fps_peer_threshold: Viewer count at which the framerate drops.
    """

    total_bitrate: int = 2_500_000
    min_bitrate: int = 150_000
    high_fps: int = 30
    low_fps: int = 15
    fps_peer_threshold: int = 4


def _parse_bool(value: str) -> Optional[bool]:
    lowered = value.strip().lower()
    if lowered in TRUE_VALUES:
        return True
    if lowered in FALSE_VALUES:
        return False
    return None


def _override_dataclass(settings: Any, data: Dict[str, Any], section: str) -> Any:
    """Return a copy of ``settings`` with known keys from ``data`` applied."""
    known = {f.name for f in fields(settings)}
    updates = {}
    for key, value in data.items():
        if key not in known:
            logger.warning(f"Ignoring unknown key '{key}' in [{section}]")
            continue
        current = getattr(settings, key)
        try:
            updates[key] = type(current)(value)
        except (TypeError, ValueError):
            logger.warning(
                f"Invalid value for '{key}' in [{section}]: {value!r}. "
                f"Keeping {current!r}."
            )
    return replace(settings, **updates)


class Config:
    """Configuration manager for vortex-mesh."""

    def __init__(self):
        """Initialize configuration with defaults."""
        self.relay_url: str = DEFAULT_RELAY_URL
        self.environment: str = "production"
        self.ice_servers: List[Dict[str, Any]] = [
            {"urls": url} for url in DEFAULT_STUN_SERVERS
        ]
        self.screen_share: ScreenShareSettings = ScreenShareSettings()
        self.noise_gate: NoiseGateSettings = NoiseGateSettings()
        self.denoise: DenoiseSettings = DenoiseSettings()
        self.noise_gate_threshold: float = 0.02
        self.denoise_enabled: bool = True
        self.denoise_intensity: float = 0.5
        self.audio_device: str = "default"
        self.audio_format: str = "pulse"
        self.ice_restart_grace: float = 3.0
        self.recovery_settle_delay: float = 0.5
        self.stats_interval: float = 1.0
        self._config_data: dict = {}

    def load(self) -> None:
        """Load configuration from all sources.

        Priority order:
        1. Environment variables (VORTEX_*)
        2. TOML configuration file
        3. Default values
        """
        # Determine environment
        self.environment = self._get_environment()

        # Try to load config file
        config_file = self._find_config_file()
        if config_file:
            self._load_config_file(config_file)

        # Apply environment variable overrides
        self._apply_env_overrides()
        self._apply_ice_overrides()

    def _get_environment(self) -> str:
        """Get the current environment from VORTEX_ENV.

        Returns:
            Environment name (development, staging, or production).
            Defaults to production if not set or invalid.
        """
        env = os.getenv("VORTEX_ENV", "production").lower()
        if env not in VALID_ENVIRONMENTS:
            logger.warning(
                f"Invalid VORTEX_ENV value '{env}'. "
                f"Valid values are: {', '.join(sorted(VALID_ENVIRONMENTS))}. "
                f"Defaulting to 'production'."
            )
            env = "production"
        return env

    def _find_config_file(self) -> Optional[Path]:
        """Find the configuration file.

        Searches in order:
        1. vortex-mesh.toml in current working directory
        2. ~/.vortex-mesh/config.toml

        Returns:
            Path to config file if found, None otherwise.
        """
        cwd_config = Path.cwd() / "vortex-mesh.toml"
        if cwd_config.exists():
            logger.info(f"Loading config from {cwd_config}")
            return cwd_config

        home_config = Path.home() / ".vortex-mesh" / "config.toml"
        if home_config.exists():
            logger.info(f"Loading config from {home_config}")
            return home_config

        logger.debug("No config file found, using defaults")
        return None

    def _load_config_file(self, config_file: Path) -> None:
        """Load configuration from TOML file.

        Args:
            config_file: Path to the TOML configuration file.
        """
        try:
            with open(config_file, "rb") as f:
                self._config_data = tomllib.load(f)
        except Exception as e:
            logger.warning(
                f"Failed to load config file {config_file}: {e}. Using defaults."
            )
            return

        environments = self._config_data.get("environments", {})
        env_config = environments.get(self.environment, {})

        if not env_config:
            logger.debug(
                f"No configuration found for environment '{self.environment}' "
                f"in {config_file}, using defaults"
            )
            return

        if "relay_url" in env_config:
            self.relay_url = env_config["relay_url"]
            logger.debug(f"Loaded relay_url from config: {self.relay_url}")

        if "ice_servers" in env_config:
            servers = env_config["ice_servers"]
            if self._valid_ice_servers(servers):
                self.ice_servers = servers
            else:
                logger.warning(f"Ignoring malformed ice_servers in {config_file}")

        section = f"environments.{self.environment}"
        if "screen_share" in env_config:
            self.screen_share = _override_dataclass(
                self.screen_share, env_config["screen_share"], f"{section}.screen_share"
            )

        audio = dict(env_config.get("audio", {}))
        for key in ("noise_gate_threshold", "denoise_intensity"):
            if key in audio:
                self._set_number(key, audio.pop(key), float, f"{section}.audio")
        if "denoise_enabled" in audio:
            self.denoise_enabled = bool(audio.pop("denoise_enabled"))
        if "gate" in audio:
            self.noise_gate = _override_dataclass(
                self.noise_gate, audio.pop("gate"), f"{section}.audio.gate"
            )
        if "denoise" in audio:
            self.denoise = _override_dataclass(
                self.denoise, audio.pop("denoise"), f"{section}.audio.denoise"
            )
        for key in ("device", "format"):
            if key in audio:
                setattr(self, f"audio_{key}", str(audio.pop(key)))
        for key in audio:
            logger.warning(f"Ignoring unknown key '{key}' in [{section}.audio]")

        for key in ("ice_restart_grace", "recovery_settle_delay", "stats_interval"):
            if key in env_config:
                self._set_number(key, env_config[key], float, section)

    def _set_number(self, attr: str, value: Any, cast: Callable, source: str) -> None:
        try:
            setattr(self, attr, cast(value))
        except (TypeError, ValueError):
            logger.warning(
                f"Invalid value for '{attr}' from {source}: {value!r}. "
                f"Keeping {getattr(self, attr)!r}."
            )

    def _apply_env_overrides(self) -> None:
        """Apply environment variable overrides.

        Environment variables take precedence over config file settings
        but are overridden by CLI arguments (handled by caller).
        """
        relay_override = os.getenv("VORTEX_RELAY_URL")
        if relay_override:
            self.relay_url = relay_override
            logger.info(f"Overriding relay_url from env: {self.relay_url}")

        numeric_overrides = {
            "VORTEX_NOISE_GATE_THRESHOLD": ("noise_gate_threshold", float),
            "VORTEX_DENOISE_INTENSITY": ("denoise_intensity", float),
            "VORTEX_ICE_RESTART_GRACE": ("ice_restart_grace", float),
            "VORTEX_RECOVERY_SETTLE_DELAY": ("recovery_settle_delay", float),
            "VORTEX_STATS_INTERVAL": ("stats_interval", float),
        }
        for env_name, (attr, cast) in numeric_overrides.items():
            value = os.getenv(env_name)
            if value:
                self._set_number(attr, value, cast, env_name)

        share_overrides = {
            "VORTEX_SCREEN_SHARE_TOTAL_BITRATE": "total_bitrate",
            "VORTEX_SCREEN_SHARE_MIN_BITRATE": "min_bitrate",
            "VORTEX_SCREEN_SHARE_HIGH_FPS": "high_fps",
            "VORTEX_SCREEN_SHARE_LOW_FPS": "low_fps",
            "VORTEX_SCREEN_SHARE_FPS_PEER_THRESHOLD": "fps_peer_threshold",
        }
        for env_name, attr in share_overrides.items():
            value = os.getenv(env_name)
            if not value:
                continue
            try:
                self.screen_share = replace(self.screen_share, **{attr: int(value)})
            except ValueError:
                logger.warning(
                    f"Invalid value for {env_name}: {value!r}. "
                    f"Keeping {getattr(self.screen_share, attr)}."
                )

        denoise_override = os.getenv("VORTEX_DENOISE_ENABLED")
        if denoise_override:
            parsed = _parse_bool(denoise_override)
            if parsed is None:
                logger.warning(
                    f"Invalid value for VORTEX_DENOISE_ENABLED: {denoise_override!r}. "
                    f"Keeping {self.denoise_enabled}."
                )
            else:
                self.denoise_enabled = parsed

        device = os.getenv("VORTEX_AUDIO_DEVICE")
        if device:
            self.audio_device = device
        audio_format = os.getenv("VORTEX_AUDIO_FORMAT")
        if audio_format:
            self.audio_format = audio_format

    def _apply_ice_overrides(self) -> None:
        """Resolve TURN servers from the environment.

        VORTEX_ICE_SERVERS replaces the list entirely. Otherwise a Metered
        API key or a complete coturn triple appends TURN entries to the STUN
        defaults.
        """
        raw = os.getenv("VORTEX_ICE_SERVERS")
        if raw:
            try:
                servers = json.loads(raw)
            except json.JSONDecodeError as e:
                logger.warning(f"Invalid VORTEX_ICE_SERVERS JSON: {e}. Keeping defaults.")
            else:
                if self._valid_ice_servers(servers):
                    self.ice_servers = servers
                    logger.info(f"Using {len(servers)} ICE servers from VORTEX_ICE_SERVERS")
                    return
                logger.warning("VORTEX_ICE_SERVERS must be a list of {urls: ...} objects")

        metered_key = os.getenv("VORTEX_METERED_API_KEY")
        if metered_key:
            self.ice_servers = self.ice_servers + [
                {
                    "urls": [
                        f"turn:{METERED_TURN_HOST}:80",
                        f"turn:{METERED_TURN_HOST}:80?transport=tcp",
                        f"turn:{METERED_TURN_HOST}:443",
                        f"turns:{METERED_TURN_HOST}:443?transport=tcp",
                    ],
                    "username": METERED_TURN_USERNAME,
                    "credential": metered_key,
                }
            ]
            logger.info("TURN enabled via Metered relay")
            return

        turn = {
            "domain": os.getenv("VORTEX_TURN_DOMAIN"),
            "username": os.getenv("VORTEX_TURN_USERNAME"),
            "credential": os.getenv("VORTEX_TURN_CREDENTIAL"),
        }
        provided = [k for k, v in turn.items() if v]
        if not provided:
            return
        if len(provided) < len(turn):
            missing = sorted(set(turn) - set(provided))
            logger.warning(
                f"Incomplete TURN configuration (missing {', '.join(missing)}). "
                f"TURN disabled."
            )
            return

        domain = turn["domain"]
        self.ice_servers = self.ice_servers + [
            {
                "urls": [
                    f"turn:{domain}:3478?transport=udp",
                    f"turn:{domain}:3478?transport=tcp",
                    f"turns:{domain}:5349",
                ],
                "username": turn["username"],
                "credential": turn["credential"],
            }
        ]
        logger.info(f"TURN enabled via {domain}")

    @staticmethod
    def _valid_ice_servers(servers: Any) -> bool:
        return isinstance(servers, list) and all(
            isinstance(s, dict) and "urls" in s for s in servers
        )

    def get_ice_urls(self) -> List[str]:
        """Get a flat list of ICE server URLs without credentials.

        Returns:
            List of STUN/TURN URLs.
        """
        urls = []
        for server in self.ice_servers:
            value = server["urls"]
            urls.extend(value if isinstance(value, list) else [value])
        return urls

    def as_dict(self) -> Dict[str, Any]:
        """Get a printable view of the resolved configuration.

        Credentials are never included.
        """
        return {
            "environment": self.environment,
            "relay_url": self.relay_url,
            "ice_urls": self.get_ice_urls(),
            "screen_share": vars(self.screen_share).copy(),
            "noise_gate_threshold": self.noise_gate_threshold,
            "denoise_enabled": self.denoise_enabled,
            "denoise_intensity": self.denoise_intensity,
            "audio_device": self.audio_device,
            "audio_format": self.audio_format,
            "ice_restart_grace": self.ice_restart_grace,
            "recovery_settle_delay": self.recovery_settle_delay,
            "stats_interval": self.stats_interval,
        }


# Global configuration instance
_config: Optional[Config] = None


def get_config() -> Config:
    """Get the global configuration instance.

    Loads configuration on first call.

    Returns:
        Global Config instance.
    """
    global _config
    if _config is None:
        _config = Config()
        _config.load()
    return _config


def reload_config() -> Config:
    """Reload configuration from sources.

    Useful for testing or runtime reconfiguration.

    Returns:
        Reloaded Config instance.
    """
    global _config
    _config = Config()
    _config.load()
    return _config
