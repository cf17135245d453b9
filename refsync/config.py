"""Configuration loader for refsync."""

import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from dotenv import load_dotenv


DEFAULT_SPARSE_CHECKOUT_DIRS = ["src", "lib", "packages", "docs", "README.md", "package.json"]


class Config:
    """Configuration manager for refsync.

    A single instance is built at process start and handed to every
    component that needs paths or settings.
    """

    def __init__(
        self,
        config_path: str = "config/config.yaml",
        values: Optional[Dict[str, Any]] = None,
    ):
        """Initialize configuration.

        Args:
            config_path: Path to main configuration file
            values: Configuration mapping to use instead of reading a file
        """
        load_dotenv()
        self.config_path = Path(config_path)
        self._config: Dict[str, Any] = {}
        if values is not None:
            self._config = values
        else:
            self._load_config()

    def _load_config(self) -> None:
        """Load configuration from the YAML file, if present."""
        if not self.config_path.exists():
            return

        with open(self.config_path, "r") as f:
            self._config = yaml.safe_load(f) or {}

    def _substitute_env_vars(self, value: str) -> str:
        """Substitute environment variables in configuration values.

        Args:
            value: String that may contain ${VAR} patterns

        Returns:
            String with environment variables substituted
        """
        if isinstance(value, str) and value.startswith("${") and value.endswith("}"):
            var_name = value[2:-1]
            return os.environ.get(var_name, "")
        return value

    def get(self, key: str, default: Any = None) -> Any:
        """Get configuration value by dot-separated key.

        Args:
            key: Dot-separated configuration key (e.g., 'paths.repo_root')
            default: Default value if key not found

        Returns:
            Configuration value or default
        """
        keys = key.split(".")
        value = self._config

        for k in keys:
            if isinstance(value, dict):
                value = value.get(k)
                if value is None:
                    return default
            else:
                return default

        if isinstance(value, str):
            value = self._substitute_env_vars(value)

        return value

    def set(self, key: str, value: Any) -> None:
        """Override a configuration value by dot-separated key.

        Intermediate sections are created as needed; a non-dict section in
        the way is replaced.
        """
        *parents, last = key.split(".")
        section = self._config
        for k in parents:
            if not isinstance(section.get(k), dict):
                section[k] = {}
            section = section[k]
        section[last] = value

    def _path(self, key: str, default: str) -> Path:
        return Path(os.path.expanduser(str(self.get(key, default))))

    # ========== Local Cache Paths ==========

    @property
    def repo_root(self) -> Path:
        """Root directory holding provider/owner/repo clones."""
        return self._path("paths.repo_root", "~/ow")

    @property
    def data_dir(self) -> Path:
        """Directory for the index, references and metadata."""
        return self._path("paths.data_dir", "~/.local/share/refsync")

    @property
    def references_dir(self) -> Path:
        """Directory holding generated reference files."""
        return self.data_dir / "references"

    @property
    def meta_dir(self) -> Path:
        """Directory holding per-reference metadata directories."""
        return self.data_dir / "meta"

    @property
    def index_path(self) -> Path:
        """Path of the persisted index file."""
        index_file = self.get("paths.index_file")
        if index_file:
            return Path(os.path.expanduser(index_file))
        return self.data_dir / "index.json"

    @property
    def log_dir(self) -> Path:
        """Get log directory path."""
        return self._path("paths.log_dir", "logs")

    @property
    def agent_skill_dirs(self) -> List[Path]:
        """Agent skill directories that receive reference symlinks."""
        dirs = self.get("agents.skill_dirs", []) or []
        return [Path(os.path.expanduser(d)) for d in dirs]

    @property
    def sparse_checkout_dirs(self) -> List[str]:
        """Paths checked out by a sparse clone."""
        return self.get("git.sparse_checkout_dirs", DEFAULT_SPARSE_CHECKOUT_DIRS)

    # ========== Sync Client ==========

    @property
    def api_base(self) -> str:
        """Base URL of the remote reference registry."""
        return os.environ.get("REFSYNC_API_BASE", self.get("sync.api_base", "http://127.0.0.1:8765"))

    @property
    def sync_timeout(self) -> int:
        """HTTP timeout for registry requests (seconds)."""
        return self.get("sync.timeout", 30)

    @property
    def auth_token(self) -> str:
        """Get the registry bearer token from environment."""
        return os.environ.get("REFSYNC_TOKEN", self.get("sync.token", ""))

    @property
    def github_token(self) -> str:
        """Get GitHub token from environment."""
        return os.environ.get("GITHUB_TOKEN", "")

    @property
    def min_stars_for_push(self) -> int:
        """Minimum upstream stars checked client-side before a push (0 disables)."""
        return self.get("sync.min_stars_for_push", 0)

    # ========== Sync Server ==========

    @property
    def server_db_path(self) -> Path:
        """SQLite database backing the registry."""
        db_path = self.get("server.db_path")
        if db_path:
            return Path(os.path.expanduser(db_path))
        return self.data_dir / "registry.db"

    @property
    def server_host(self) -> str:
        """Get the registry server host."""
        return self.get("server.host", "127.0.0.1")

    @property
    def server_port(self) -> int:
        """Get the registry server port."""
        return self.get("server.port", 8765)

    @property
    def push_limit_per_day(self) -> int:
        """Maximum pushes per user and repository inside the window."""
        return self.get("server.rate_limit.max_pushes", 3)

    @property
    def push_window_hours(self) -> int:
        """Length of the trailing rate-limit window (hours)."""
        return self.get("server.rate_limit.window_hours", 24)
