"""
Service lifecycle control around backup and restore windows.

Stopping the application's services is the acquire step and starting them
again is the release step. ServiceLifecycle is a context manager that
guarantees the release on every exit path (success, error, Ctrl-C or
SIGTERM translated to KeyboardInterrupt) and never starts anything it did
not stop itself.
"""

from __future__ import annotations

import logging
import subprocess
from abc import ABC, abstractmethod
from collections.abc import Sequence
from pathlib import Path

from snapvault.errors import ServiceError, ToolUnavailableError

logger = logging.getLogger(__name__)

COMPOSE_TIMEOUT_SECONDS = 300


class ServiceController(ABC):
    """Stops and starts the services of the deployment being backed up."""

    @abstractmethod
    def is_running(self) -> bool:
        """True if any managed service is currently running."""

    @abstractmethod
    def stop(self) -> None:
        """Stop all managed services."""

    @abstractmethod
    def start(self) -> None:
        """Start all managed services."""


class NullServiceController(ServiceController):
    """Controller for deployments without a service manager."""

    def is_running(self) -> bool:
        return False

    def stop(self) -> None:
        pass

    def start(self) -> None:
        pass


class DockerComposeController(ServiceController):
    """
    Controls services through ``docker compose`` in the project directory.

    Backups use ``stop``/``start`` so containers keep their state; restores
    use ``down``/``up -d`` so containers are recreated from restored config.
    """

    def __init__(
        self,
        project_dir: Path,
        command: Sequence[str] = ("docker", "compose"),
        stop_action: Sequence[str] = ("stop",),
        start_action: Sequence[str] = ("start",),
    ) -> None:
        self.project_dir = Path(project_dir)
        self.command = list(command)
        self.stop_action = list(stop_action)
        self.start_action = list(start_action)

    @classmethod
    def for_restore(cls, project_dir: Path, command: Sequence[str] = ("docker", "compose")):
        return cls(project_dir, command, stop_action=("down",), start_action=("up", "-d"))

    def is_running(self) -> bool:
        result = self._run(["ps", "--services", "--filter", "status=running"])
        if result.returncode != 0:
            raise ServiceError(f"Cannot query service status: {result.stderr.strip()}")
        return bool(result.stdout.strip())

    def stop(self) -> None:
        result = self._run(self.stop_action)
        if result.returncode != 0:
            raise ServiceError(f"Failed to stop services: {result.stderr.strip()}")

    def start(self) -> None:
        result = self._run(self.start_action)
        if result.returncode != 0:
            raise ServiceError(f"Failed to start services: {result.stderr.strip()}")

    def _run(self, args: Sequence[str]) -> subprocess.CompletedProcess:
        cmd = [*self.command, *args]
        logger.debug(f"Running: {' '.join(cmd)}")
        try:
            return subprocess.run(
                cmd,
                cwd=self.project_dir,
                capture_output=True,
                text=True,
                timeout=COMPOSE_TIMEOUT_SECONDS,
            )
        except FileNotFoundError as e:
            raise ToolUnavailableError(f"{self.command[0]} command not found") from e
        except subprocess.TimeoutExpired as e:
            raise ServiceError(f"'{' '.join(cmd)}' timed out") from e


class ServiceLifecycle:
    """
    Scoped stop/start of services.

    Usage:
        with ServiceLifecycle(controller) as services:
            services.stop()
            ...  # services restarted on exit, even on error

    Args:
        controller: Service controller to drive.
        restart_on_success: Restart stopped services when the block
            completes normally. Stopped services are always restarted when
            the block raises.
    """

    def __init__(self, controller: ServiceController, restart_on_success: bool = True) -> None:
        self.controller = controller
        self.restart_on_success = restart_on_success
        self.services_stopped = False

    def __enter__(self) -> ServiceLifecycle:
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        if exc_type is None:
            if self.restart_on_success:
                self.start()
            elif self.services_stopped:
                logger.warning("Services left stopped as requested")
            return False

        if self.services_stopped:
            logger.warning("Attempting to restart services after failure...")
            try:
                self.start()
            except Exception:
                # Never replaces the exception already propagating
                logger.exception("Failed to restart services")
        return False

    def stop(self) -> bool:
        """
        Stop services if they are running.

        Returns:
            True if services were stopped by this call.
        """
        if self.services_stopped:
            return False
        if not self.controller.is_running():
            logger.info("Services are already stopped")
            return False
        logger.info("Stopping services...")
        # A half-failed stop still needs the restart on exit
        self.services_stopped = True
        self.controller.stop()
        logger.info("Services stopped")
        return True

    def start(self) -> bool:
        """
        Start services previously stopped by this scope.

        Returns:
            True if services were started by this call.
        """
        if not self.services_stopped:
            return False
        logger.info("Starting services...")
        self.controller.start()
        self.services_stopped = False
        logger.info("Services started")
        return True
