"""Configuration loading for intentguard.

Process settings come from environment variables (and a .env file in the
current directory):

- INTENTGUARD_CONFIG_DIR: preferred directory for the YAML documents
- INTENTGUARD_LEGACY_CONFIG_DIR: fallback directory checked second
- INTENTGUARD_DB_PATH: SQLite database path
- INTENTGUARD_HOST / INTENTGUARD_PORT: companion server bind address

Enforcement settings come from three YAML documents in the config directory:
config.yaml (AppConfig), rules.yaml (RulesConfig) and bundles.yaml
(BundleConfig). They are read once at startup and never reloaded.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv

from intentguard.models import Bundle, BundleApp

load_dotenv()

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_DIR = Path.home() / ".config" / "intentguard"
DEFAULT_LEGACY_CONFIG_DIR = Path.home() / ".intentguard"
DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 9999
LOOPBACK_HOSTS = ("127.0.0.1", "localhost", "::1")

APP_CONFIG_FILE = "config.yaml"
RULES_CONFIG_FILE = "rules.yaml"
BUNDLE_CONFIG_FILE = "bundles.yaml"

DEFAULT_APP_CONFIG_YAML = """\
# Timing
default_duration_minutes: 25
warning_before_end_minutes: 5
unlimited_checkin_minutes: 30  # check-in interval for unlimited mode

# Enforcement
break_glass_phrase: "I am choosing distraction"
reassert_focus_delay_ms: 100

# Classifier (consulted only when one is installed)
llm_provider: openai  # or 'anthropic'
llm_model: gpt-4o-mini
llm_api_key_env: OPENAI_API_KEY  # read from environment

# Visual
theme: dark
background_animation: orb  # orb, faces, cityscape, none
"""

DEFAULT_RULES_CONFIG_YAML = """\
# These apply before any per-intention rule
always_allowed:
  apps:
    - com.apple.finder
    - com.apple.Safari
    - com.google.Chrome
  urls:
    - "google.com/search"

always_blocked:
  apps: []
  urls:
    - "reddit.com/"
    - "twitter.com/"
    - "tiktok.com/"

# Keyword-triggered allowances: a rule applies when the intention text
# contains any of the |-separated keywords
intention_rules:
  - pattern: "code|programming|develop|debug|software"
    allow_apps:
      - com.microsoft.VSCode
      - com.apple.dt.Xcode
      - com.googlecode.iterm2
    allow_urls:
      - "github.com/"
      - "stackoverflow.com/"
      - "developer.apple.com/"
"""

DEFAULT_BUNDLE_CONFIG_YAML = """\
# Bundles are saved here for easy backup/sharing.
# Bundles already in the database are never overwritten from this file.

bundles:
  - name: Writing
    apps:
      - id: md.obsidian
        name: Obsidian
      - id: com.iawriter.mac
        name: iA Writer
    urls:
      - "medium.com/p/*"
      - "docs.google.com/document/*"

  - name: Deep Work
    apps:
      - id: com.microsoft.VSCode
        name: VS Code
      - id: com.apple.Terminal
        name: Terminal
      - id: com.googlecode.iterm2
        name: iTerm
    urls:
      - "github.com/*"
      - "stackoverflow.com/*"
      - "*.anthropic.com/*"

  - name: Research
    apps:
      - id: com.google.Chrome
        name: Chrome
      - id: notion.id
        name: Notion
    urls:
      - "scholar.google.com/*"
      - "*.edu/*"
      - "arxiv.org/*"
      - "*.wikipedia.org/*"

  - name: Journal
    apps:
      - id: md.obsidian
        name: Obsidian
    urls: []
"""


@dataclass
class Config:
    config_dir: Path = DEFAULT_CONFIG_DIR
    legacy_config_dir: Path = DEFAULT_LEGACY_CONFIG_DIR
    db_path: Path = DEFAULT_CONFIG_DIR / "intentguard.db"
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT

    @classmethod
    def load(cls) -> Config:
        config_dir = Path(os.getenv("INTENTGUARD_CONFIG_DIR", str(DEFAULT_CONFIG_DIR)))
        port_text = os.getenv("INTENTGUARD_PORT", str(DEFAULT_PORT))
        try:
            port = int(port_text)
        except ValueError:
            logger.warning(f"Ignoring non-numeric INTENTGUARD_PORT={port_text!r}")
            port = DEFAULT_PORT
        return cls(
            config_dir=config_dir,
            legacy_config_dir=Path(
                os.getenv("INTENTGUARD_LEGACY_CONFIG_DIR", str(DEFAULT_LEGACY_CONFIG_DIR))
            ),
            db_path=Path(os.getenv("INTENTGUARD_DB_PATH", str(config_dir / "intentguard.db"))),
            host=os.getenv("INTENTGUARD_HOST", DEFAULT_HOST),
            port=port,
        )

    def validate(self) -> list[str]:
        """Return a list of config issues."""
        issues = []
        if not 0 < self.port < 65536:
            issues.append(f"Port out of range (INTENTGUARD_PORT={self.port})")
        if self.host not in LOOPBACK_HOSTS:
            issues.append(f"Companion server must bind to loopback, not {self.host!r} (INTENTGUARD_HOST)")
        return issues


@dataclass
class AppConfig:
    default_duration_minutes: int = 25
    warning_before_end_minutes: int = 5
    unlimited_checkin_minutes: int = 30
    break_glass_phrase: str = "I am choosing distraction"
    reassert_focus_delay_ms: int = 100
    llm_provider: str = "openai"
    llm_model: str = "gpt-4o-mini"
    llm_api_key_env: str = "OPENAI_API_KEY"
    theme: str = "dark"
    background_animation: str = "orb"

    @property
    def warning_window_seconds(self) -> int:
        return self.warning_before_end_minutes * 60

    @property
    def checkin_interval_seconds(self) -> int:
        return self.unlimited_checkin_minutes * 60

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AppConfig:
        defaults = cls()
        return cls(
            default_duration_minutes=_int(data, "default_duration_minutes", defaults.default_duration_minutes),
            warning_before_end_minutes=_int(data, "warning_before_end_minutes", defaults.warning_before_end_minutes),
            unlimited_checkin_minutes=_int(data, "unlimited_checkin_minutes", defaults.unlimited_checkin_minutes),
            break_glass_phrase=_str(data, "break_glass_phrase", defaults.break_glass_phrase),
            reassert_focus_delay_ms=_int(data, "reassert_focus_delay_ms", defaults.reassert_focus_delay_ms),
            llm_provider=_str(data, "llm_provider", defaults.llm_provider),
            llm_model=_str(data, "llm_model", defaults.llm_model),
            llm_api_key_env=_str(data, "llm_api_key_env", defaults.llm_api_key_env),
            theme=_str(data, "theme", defaults.theme),
            background_animation=_str(data, "background_animation", defaults.background_animation),
        )


@dataclass
class AllowBlockList:
    apps: list[str] = field(default_factory=list)
    urls: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Any) -> AllowBlockList:
        if not isinstance(data, dict):
            return cls()
        return cls(apps=_str_list(data.get("apps")), urls=_str_list(data.get("urls")))


@dataclass
class IntentionRule:
    pattern: str = ""  # "code|programming|debug"
    allow_apps: list[str] = field(default_factory=list)
    allow_urls: list[str] = field(default_factory=list)


@dataclass
class RulesConfig:
    always_allowed: AllowBlockList = field(default_factory=AllowBlockList)
    always_blocked: AllowBlockList = field(default_factory=AllowBlockList)
    intention_rules: list[IntentionRule] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RulesConfig:
        rules = []
        for entry in data.get("intention_rules") or []:
            if not isinstance(entry, dict):
                continue
            rules.append(
                IntentionRule(
                    pattern=_str(entry, "pattern", ""),
                    allow_apps=_str_list(entry.get("allow_apps")),
                    allow_urls=_str_list(entry.get("allow_urls")),
                )
            )
        return cls(
            always_allowed=AllowBlockList.from_dict(data.get("always_allowed")),
            always_blocked=AllowBlockList.from_dict(data.get("always_blocked")),
            intention_rules=rules,
        )


@dataclass
class BundleEntry:
    name: str
    apps: list[BundleApp] = field(default_factory=list)
    urls: list[str] = field(default_factory=list)

    def to_bundle(self) -> Bundle:
        now = datetime.now()
        return Bundle(
            id=0,
            name=self.name,
            apps=list(self.apps),
            url_patterns=list(self.urls),
            created_at=now,
            updated_at=now,
        )


@dataclass
class BundleConfig:
    bundles: list[BundleEntry] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BundleConfig:
        entries = []
        for entry in data.get("bundles") or []:
            if not isinstance(entry, dict):
                continue
            name = entry.get("name")
            if not isinstance(name, str) or not name.strip():
                continue
            apps = []
            for app in entry.get("apps") or []:
                if isinstance(app, dict) and isinstance(app.get("id"), str) and isinstance(app.get("name"), str):
                    apps.append(BundleApp(app_id=app["id"], name=app["name"]))
            entries.append(BundleEntry(name=name.strip(), apps=apps, urls=_str_list(entry.get("urls"))))
        return cls(bundles=entries)


class ConfigStore:
    """Loads the three YAML documents once and exposes them read-only."""

    def __init__(self, config_dir: Path, legacy_config_dir: Path | None = None) -> None:
        self.config_dir = config_dir
        self.legacy_config_dir = legacy_config_dir
        self.app = AppConfig()
        self.rules = RulesConfig()
        self.bundles = BundleConfig()

    @classmethod
    def from_config(cls, config: Config) -> ConfigStore:
        return cls(config.config_dir, config.legacy_config_dir)

    def load(self) -> ConfigStore:
        """Read all three documents. Missing ones are created from the defaults."""
        self.app = AppConfig.from_dict(self._load_document(APP_CONFIG_FILE, DEFAULT_APP_CONFIG_YAML))
        self.rules = RulesConfig.from_dict(self._load_document(RULES_CONFIG_FILE, DEFAULT_RULES_CONFIG_YAML))
        # The default bundle document is read back once written so first runs get starter bundles
        self.bundles = BundleConfig.from_dict(
            self._load_document(BUNDLE_CONFIG_FILE, DEFAULT_BUNDLE_CONFIG_YAML, reread_default=True)
        )
        return self

    def resolve_path(self, filename: str) -> Path | None:
        """The preferred path if it exists, else the legacy path if it exists."""
        preferred = self.config_dir / filename
        if preferred.exists():
            return preferred
        if self.legacy_config_dir is not None:
            legacy = self.legacy_config_dir / filename
            if legacy.exists():
                return legacy
        return None

    def write_defaults(self) -> list[Path]:
        """Write any missing default document to the config dir. Returns created paths."""
        created = []
        for filename, content in (
            (APP_CONFIG_FILE, DEFAULT_APP_CONFIG_YAML),
            (RULES_CONFIG_FILE, DEFAULT_RULES_CONFIG_YAML),
            (BUNDLE_CONFIG_FILE, DEFAULT_BUNDLE_CONFIG_YAML),
        ):
            if self.resolve_path(filename) is None and self._write_default(filename, content):
                created.append(self.config_dir / filename)
        return created

    def sync_bundles(self, repo) -> list[Bundle]:
        """Create config-declared bundles that are not stored yet.

        Existing bundles with the same name are left untouched so edits made
        through the app win over the file. Returns the bundles created.
        """
        existing = {b.name for b in repo.get_all_bundles()}
        created = []
        for entry in self.bundles.bundles:
            if entry.name in existing:
                continue
            created.append(repo.create_bundle(entry.to_bundle()))
            existing.add(entry.name)
        if created:
            logger.info(f"Synced {len(created)} bundle(s) from {BUNDLE_CONFIG_FILE}")
        return created

    def export_bundles(self, bundles: list[Bundle]) -> Path:
        """Write stored bundles back to bundles.yaml for backup/sharing."""
        document = {
            "bundles": [
                {
                    "name": b.name,
                    "apps": [{"id": a.app_id, "name": a.name} for a in b.apps],
                    "urls": list(b.url_patterns),
                }
                for b in sorted(bundles, key=lambda b: b.name)
            ]
        }
        self.config_dir.mkdir(parents=True, exist_ok=True)
        path = self.config_dir / BUNDLE_CONFIG_FILE
        header = "# Bundles are saved here for easy backup/sharing.\n\n"
        path.write_text(header + yaml.safe_dump(document, sort_keys=False), encoding="utf-8")
        return path

    def _load_document(
        self, filename: str, default_text: str, reread_default: bool = False
    ) -> dict[str, Any]:
        """Parse one document into a dict. Returns {} (built-in defaults) on any problem."""
        path = self.resolve_path(filename)
        if path is None:
            written = self._write_default(filename, default_text)
            if written and reread_default:
                return yaml.safe_load(default_text)
            return {}

        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8"))
        except (yaml.YAMLError, OSError, UnicodeDecodeError) as e:
            logger.warning(f"Failed to parse {path}, using defaults: {e}")
            return {}

        if data is None:
            return {}
        if not isinstance(data, dict):
            logger.warning(f"Expected a mapping at the top of {path}, using defaults")
            return {}
        return data

    def _write_default(self, filename: str, content: str) -> bool:
        try:
            self.config_dir.mkdir(parents=True, exist_ok=True)
            (self.config_dir / filename).write_text(content, encoding="utf-8")
        except OSError as e:
            logger.warning(f"Could not write default {filename}: {e}")
            return False
        return True


def _int(data: dict[str, Any], key: str, default: int) -> int:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int):
        return default
    return value


def _str(data: dict[str, Any], key: str, default: str) -> str:
    value = data.get(key, default)
    return value if isinstance(value, str) else default


def _str_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [v for v in value if isinstance(v, str)]
