# =============================================================================
# Configuration Management
# =============================================================================
# Handles loading, saving, and validating mailshuttle configuration.
#
# XDG Base Directory Compliance (https://specifications.freedesktop.org/basedir-spec/):
#   - Config:  $XDG_CONFIG_HOME/mailshuttle/  (default: ~/.config/mailshuttle/)
#
# Files:
#   - config.toml: Server endpoints, folder names, size limit, timeouts
#
# The Config object is built once at startup and handed to each component's
# constructor. Nothing below the CLI reads configuration on its own.
#
# Passwords may be left out of config.toml. They are then looked up in the
# system keyring under the service name "mailshuttle:<section>":
#   keyring set mailshuttle:imap user@example.com
# =============================================================================

import os
import tomllib  # Built into Python 3.11+
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import tomli_w  # For writing TOML (tomllib is read-only)


# =============================================================================
# XDG Directory Management
# =============================================================================

# Application identifier used in all XDG paths and keyring service names
APP_NAME = "mailshuttle"


def get_xdg_config_home() -> Path:
    """
    Returns the XDG config directory for mailshuttle.

    Respects $XDG_CONFIG_HOME if set, otherwise uses ~/.config/mailshuttle/
    """
    xdg_config = os.environ.get("XDG_CONFIG_HOME")
    if xdg_config:
        base = Path(xdg_config)
    else:
        base = Path.home() / ".config"
    return base / APP_NAME


# =============================================================================
# Configuration Data Structures
# =============================================================================

@dataclass
class ImapConfig:
    """
    The mailbox being drained.

    Attributes:
        host: IMAP server hostname. The connection is always TLS (port 993
              style), never plain or STARTTLS.
        port: IMAP server port.
        user: Login name.
        password: Login password. Empty means "look it up in the keyring".
        folder: Folder watched for new mail.
        folder_moved: Destination for successfully imported messages.
        folder_quarantine: Destination for oversized or rejected messages.
        max_email_size: Messages larger than this (bytes) are quarantined
                        without being imported.
        idle_timeout: Seconds to stay in IDLE with no activity before
                      forcing a new pass. The socket timeout is twice this.
        search_criteria: IMAP SEARCH criteria selecting pending messages.
    """
    host: str = ""
    port: int = 993
    user: str = ""
    password: str = ""
    folder: str = "INBOX"
    folder_moved: str = "Moved"
    folder_quarantine: str = "Quarantine"
    max_email_size: int = 25 * 1024 * 1024
    idle_timeout: float = 300.0
    search_criteria: str = "ALL"

    @property
    def keyring_service(self) -> str:
        """Keyring service name used when no password is configured."""
        return f"{APP_NAME}:imap"

    @property
    def connection_timeout(self) -> float:
        """Socket-level timeout: twice the idle budget."""
        return 2 * self.idle_timeout


@dataclass
class ImporterConfig:
    """
    The IMAP mailbox that accepted messages are uploaded into.

    Attributes:
        host: Destination IMAP server (e.g. "imap.gmail.com").
        port: Destination port (TLS).
        user: Login name.
        password: Login password. Empty means "look it up in the keyring".
        folder: Mailbox messages are appended to.
        flags: IMAP flags set on the appended copy (e.g. ["\\Seen"]).
    """
    host: str = ""
    port: int = 993
    user: str = ""
    password: str = ""
    folder: str = "INBOX"
    flags: list[str] = field(default_factory=list)

    @property
    def keyring_service(self) -> str:
        return f"{APP_NAME}:importer"


@dataclass
class NotifyConfig:
    """
    SMTP settings for operator alerts (quarantine events).

    Attributes:
        enabled: If False, alerts are only written to the log.
        smtp_host: SMTP server hostname.
        smtp_port: SMTP port (587 for STARTTLS, 465 for SSL).
        smtp_security: "starttls" or "ssl".
        user: SMTP login. Empty means no authentication.
        password: SMTP password. Empty means "look it up in the keyring".
        sender: From address of alerts.
        recipients: Alert recipients.
        subject_prefix: Prepended to every alert subject.
    """
    enabled: bool = True
    smtp_host: str = ""
    smtp_port: int = 587
    smtp_security: str = "starttls"
    user: str = ""
    password: str = ""
    sender: str = ""
    recipients: list[str] = field(default_factory=list)
    subject_prefix: str = "[mailshuttle] "

    @property
    def keyring_service(self) -> str:
        return f"{APP_NAME}:notify"


@dataclass
class WatchdogConfig:
    """
    Supervisor settings.

    Attributes:
        liveness_window: Seconds without a liveness pulse from the sync loop
                         before it is considered hung and restarted.
                         0 means three times the IMAP idle timeout.
        reconnect_delay: Seconds to wait before restarting a failed loop.
        max_restarts: Give up after this many restarts (0 = never give up).
    """
    liveness_window: float = 0.0
    reconnect_delay: float = 30.0
    max_restarts: int = 0


@dataclass
class Config:
    """
    Main configuration container for mailshuttle.

    Usage:
        >>> config = Config.load()
        >>> config.imap.folder_quarantine
        'Quarantine'
    """
    imap: ImapConfig = field(default_factory=ImapConfig)
    importer: ImporterConfig = field(default_factory=ImporterConfig)
    notify: NotifyConfig = field(default_factory=NotifyConfig)
    watchdog: WatchdogConfig = field(default_factory=WatchdogConfig)

    @property
    def liveness_window(self) -> float:
        """Effective watchdog window in seconds."""
        if self.watchdog.liveness_window > 0:
            return self.watchdog.liveness_window
        return 3 * self.imap.idle_timeout

    # -------------------------------------------------------------------------
    # File Paths
    # -------------------------------------------------------------------------

    @staticmethod
    def config_file_path() -> Path:
        """Returns the path to the main config file."""
        return get_xdg_config_home() / "config.toml"

    # -------------------------------------------------------------------------
    # Loading and Saving
    # -------------------------------------------------------------------------

    @classmethod
    def load(cls, path: Path | None = None) -> "Config":
        """
        Load and validate configuration.

        Args:
            path: Config file to read. Defaults to the XDG location.

        Returns:
            Loaded Config object.

        Raises:
            ConfigError: If the file is missing, not valid TOML, or
                         fails validation.
        """
        config_path = path or cls.config_file_path()

        if not config_path.exists():
            raise ConfigError(
                f"Config file not found: {config_path}. "
                f"Create one with: {APP_NAME} --init-config"
            )

        try:
            with open(config_path, "rb") as f:
                data = tomllib.load(f)
        except tomllib.TOMLDecodeError as e:
            raise ConfigError(f"Invalid config file: {e}") from e

        config = cls._from_dict(data)
        config.validate()
        return config

    def save(self, path: Path | None = None) -> Path:
        """
        Save configuration as TOML.

        Creates the parent directory if it doesn't exist.

        Returns:
            The path written to.
        """
        config_path = path or self.config_file_path()
        config_path.parent.mkdir(parents=True, exist_ok=True)

        with open(config_path, "wb") as f:
            tomli_w.dump(self._to_dict(), f)

        return config_path

    def validate(self) -> None:
        """
        Check the values a sync run cannot work without.

        Raises:
            ConfigError: Describing the first problem found.
        """
        imap = self.imap
        if not imap.host:
            raise ConfigError("imap.host is required")
        if not imap.user:
            raise ConfigError("imap.user is required")
        if imap.max_email_size <= 0:
            raise ConfigError("imap.max_email_size must be positive")
        if imap.idle_timeout <= 0:
            raise ConfigError("imap.idle_timeout must be positive")

        # The inbox is a staging area; relocating into it would loop forever
        for key in ("folder_moved", "folder_quarantine"):
            if getattr(imap, key) == imap.folder:
                raise ConfigError(f"imap.{key} must differ from imap.folder")

        if not self.importer.host:
            raise ConfigError("importer.host is required")

        if self.notify.enabled:
            if not self.notify.smtp_host:
                raise ConfigError("notify.smtp_host is required when notify is enabled")
            if self.notify.smtp_security not in ("ssl", "starttls"):
                raise ConfigError("notify.smtp_security must be 'ssl' or 'starttls'")
            if not self.notify.recipients:
                raise ConfigError("notify.recipients is required when notify is enabled")

    @classmethod
    def _from_dict(cls, data: dict[str, Any]) -> "Config":
        """
        Create a Config object from a dictionary (parsed TOML).

        Missing keys fall back to the dataclass defaults.
        """
        config = cls()

        imap = data.get("imap", {})
        defaults = ImapConfig()
        config.imap = ImapConfig(
            host=imap.get("host", defaults.host),
            port=imap.get("port", defaults.port),
            user=imap.get("user", defaults.user),
            password=imap.get("password", defaults.password),
            folder=imap.get("folder", defaults.folder),
            folder_moved=imap.get("folder_moved", defaults.folder_moved),
            folder_quarantine=imap.get("folder_quarantine", defaults.folder_quarantine),
            max_email_size=imap.get("max_email_size", defaults.max_email_size),
            idle_timeout=float(imap.get("idle_timeout", defaults.idle_timeout)),
            search_criteria=imap.get("search_criteria", defaults.search_criteria),
        )

        importer = data.get("importer", {})
        config.importer = ImporterConfig(
            host=importer.get("host", ""),
            port=importer.get("port", 993),
            user=importer.get("user", ""),
            password=importer.get("password", ""),
            folder=importer.get("folder", "INBOX"),
            flags=list(importer.get("flags", [])),
        )

        notify = data.get("notify", {})
        config.notify = NotifyConfig(
            enabled=notify.get("enabled", True),
            smtp_host=notify.get("smtp_host", ""),
            smtp_port=notify.get("smtp_port", 587),
            smtp_security=notify.get("smtp_security", "starttls"),
            user=notify.get("user", ""),
            password=notify.get("password", ""),
            sender=notify.get("sender", ""),
            recipients=list(notify.get("recipients", [])),
            subject_prefix=notify.get("subject_prefix", "[mailshuttle] "),
        )

        watchdog = data.get("watchdog", {})
        config.watchdog = WatchdogConfig(
            liveness_window=float(watchdog.get("liveness_window", 0.0)),
            reconnect_delay=float(watchdog.get("reconnect_delay", 30.0)),
            max_restarts=watchdog.get("max_restarts", 0),
        )

        return config

    def _to_dict(self) -> dict[str, Any]:
        """
        Convert Config to a dictionary for TOML serialization.

        Passwords are only written if they were set explicitly.
        """
        data: dict[str, Any] = {}

        data["imap"] = {
            "host": self.imap.host,
            "port": self.imap.port,
            "user": self.imap.user,
            "folder": self.imap.folder,
            "folder_moved": self.imap.folder_moved,
            "folder_quarantine": self.imap.folder_quarantine,
            "max_email_size": self.imap.max_email_size,
            "idle_timeout": self.imap.idle_timeout,
            "search_criteria": self.imap.search_criteria,
        }

        data["importer"] = {
            "host": self.importer.host,
            "port": self.importer.port,
            "user": self.importer.user,
            "folder": self.importer.folder,
            "flags": list(self.importer.flags),
        }

        data["notify"] = {
            "enabled": self.notify.enabled,
            "smtp_host": self.notify.smtp_host,
            "smtp_port": self.notify.smtp_port,
            "smtp_security": self.notify.smtp_security,
            "user": self.notify.user,
            "sender": self.notify.sender,
            "recipients": list(self.notify.recipients),
            "subject_prefix": self.notify.subject_prefix,
        }

        data["watchdog"] = {
            "liveness_window": self.watchdog.liveness_window,
            "reconnect_delay": self.watchdog.reconnect_delay,
            "max_restarts": self.watchdog.max_restarts,
        }

        for section, source in (
            ("imap", self.imap),
            ("importer", self.importer),
            ("notify", self.notify),
        ):
            if source.password:
                data[section]["password"] = source.password

        return data


# =============================================================================
# Exceptions
# =============================================================================

class ConfigError(Exception):
    """Raised when there's an error loading or parsing configuration."""
    pass


# =============================================================================
# Utility Functions
# =============================================================================

def print_paths() -> None:
    """Print the config locations, for users wondering where things live."""
    print(f"Config:       {get_xdg_config_home()}")
    print(f"Config file:  {Config.config_file_path()}")
