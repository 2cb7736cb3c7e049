"""Application wiring: settings, database, DataForSEO client, workflow and scheduler.

``GeoGridApp`` is the one place that reads ``config/settings.yaml`` and
``.env``. The CLI builds one per command; the scheduler builds a fresh one
inside every job run.
"""

import logging
import os
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "config/settings.yaml"
DEFAULT_ENV_PATH = ".env"


def load_settings(path: str | Path) -> dict[str, Any]:
    """Parse the YAML settings file; a missing or empty file gives ``{}``."""
    settings_file = Path(path)
    if not settings_file.is_file():
        logger.warning("Settings file %s not found, falling back to defaults.", settings_file)
        return {}
    settings = yaml.safe_load(settings_file.read_text(encoding="utf-8")) or {}
    logger.info("Settings read from %s (%d sections)", settings_file, len(settings))
    return settings


class GeoGridApp:
    """Shared entry point for the CLI and the scheduler.

    Usage::

        app = GeoGridApp()
        app.initialize()
        result = asyncio.run(app.get_workflow().run_scan(campaign_id))
    """

    def __init__(
        self,
        config_path: str = DEFAULT_CONFIG_PATH,
        env_path: str = DEFAULT_ENV_PATH,
    ):
        self._config_path = config_path
        self._env_path = env_path
        self.config: dict[str, Any] = {}
        self._ready = False
        self._provider = None
        self._workflow = None
        self._scheduler = None

    def initialize(self) -> None:
        """Read ``.env`` and settings, then create any missing tables. Idempotent."""
        if self._ready:
            return

        if Path(self._env_path).is_file():
            load_dotenv(self._env_path)
            logger.info("Environment variables loaded from %s", self._env_path)

        self.config = load_settings(self._config_path)

        from geogrid.database import init_db
        db_cfg = self.section("database")
        init_db(
            database_url=os.getenv("DATABASE_URL") or db_cfg.get("url"),
            echo=db_cfg.get("echo", False),
        )

        self._ready = True
        logger.info("GeoGridApp ready.")

    def section(self, name: str) -> dict[str, Any]:
        return self.config.get(name, {}) or {}

    def _require_ready(self) -> None:
        if not self._ready:
            raise RuntimeError("GeoGridApp.initialize() has not been called.")

    # ------------------------------------------------------------------
    # Components
    # ------------------------------------------------------------------

    def get_provider(self):
        """Return the shared DataForSEO client, creating it on first use.

        Raises:
            ConfigurationError: Credentials are missing from the environment.
        """
        if self._provider is not None:
            return self._provider

        from geogrid.integrations.dataforseo import DATAFORSEO_BASE_URL, DataForSEOClient
        from geogrid.utils.rate_limiter import RateLimiter

        api_cfg = self.section("dataforseo")
        rpm = self.section("rate_limits").get("dataforseo", {}).get("requests_per_minute", 2000)
        self._provider = DataForSEOClient(
            base_url=api_cfg.get("base_url", DATAFORSEO_BASE_URL),
            timeout=api_cfg.get("timeout", 60),
            max_retries=api_cfg.get("max_retries", 3),
            rate_limiter=RateLimiter(requests_per_minute=rpm, name="dataforseo"),
        )
        return self._provider

    def get_workflow(self, provider=None):
        """Return the scan workflow.

        Passing ``provider`` builds a one-off workflow around it; otherwise the
        cached workflow around the DataForSEO client is returned.
        """
        self._require_ready()
        if provider is not None:
            return self._build_workflow(provider)
        if self._workflow is None:
            self._workflow = self._build_workflow(self.get_provider())
        return self._workflow

    def _build_workflow(self, provider):
        from geogrid.modules.local_grid.grid_scanner import DEFAULT_COST_PER_CALL
        from geogrid.workflows import GridScanWorkflow

        grid_cfg = self.section("grid")
        return GridScanWorkflow(
            provider=provider,
            cost_per_call=self.section("dataforseo").get("cost_per_call", DEFAULT_COST_PER_CALL),
            depth=grid_cfg.get("depth", 20),
            zoom=grid_cfg.get("zoom", 14),
        )

    def get_scheduler(self):
        """Return the scan scheduler (not started), creating it on first use."""
        self._require_ready()
        if self._scheduler is None:
            from geogrid.scheduler import DEFAULT_JOB_STORE_URL, ScanScheduler

            sched_cfg = self.section("scheduler")
            self._scheduler = ScanScheduler(
                job_store_url=sched_cfg.get("job_store", DEFAULT_JOB_STORE_URL),
                timezone=sched_cfg.get("timezone", "UTC"),
                max_workers=sched_cfg.get("max_concurrent_jobs", 1),
                config_path=self._config_path,
                env_path=self._env_path,
            )
        return self._scheduler

    def grid_defaults(self) -> dict[str, Any]:
        """Grid size and radius used when a campaign is created without them."""
        grid_cfg = self.section("grid")
        return {
            "grid_size": grid_cfg.get("default_size", 7),
            "radius_miles": grid_cfg.get("default_radius_miles", 5.0),
        }

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    def get_status(self) -> dict[str, dict[str, Any]]:
        """Health of each component as ``{name: {"status", "details"}}``."""
        self._require_ready()
        from sqlalchemy.exc import SQLAlchemyError
        from geogrid.database import table_names

        try:
            database = {"status": "ok", "details": f"{len(table_names())} tables"}
        except SQLAlchemyError as exc:
            database = {"status": "error", "details": str(exc)}

        if os.getenv("DATAFORSEO_LOGIN") and os.getenv("DATAFORSEO_PASSWORD"):
            dataforseo = {"status": "ok", "details": "credentials configured"}
        else:
            dataforseo = {"status": "warning", "details": "DATAFORSEO_LOGIN/PASSWORD not set"}

        if self.config:
            config = {"status": "ok", "details": f"{len(self.config)} sections loaded"}
        else:
            config = {"status": "warning", "details": "no config"}

        return {"database": database, "dataforseo": dataforseo, "config": config}
