from __future__ import annotations

import asyncio
import os
import socket
from typing import Any

from ringwarden.env import BalancerConfig, Env, load_env
from ringwarden.health import HealthProber, ProbeConfig
from ringwarden.logging import Logger, LoggingConfig
from ringwarden.logging.ringwarden_logging_models import ServerInfo, ServerWarning
from ringwarden.models import Backend, BackendHealth
from ringwarden.proxy import BackendForwarder, LoadBalancerFront
from ringwarden.reconcile import (
    CommandProvisioner,
    LogOnlyProvisioner,
    Provisioner,
    Reconciler,
)
from ringwarden.registry import BackendRegistry
from ringwarden.routing import AffinityRouter, SessionKeyExtractor

EVENTS_LOGGER = "events"


class Balancer:
    """
    One load balancer process: registry, prober, router, front end and
    reconciler wired together around a shared backend registry.

    Usage:
        balancer = Balancer.from_env()
        await balancer.start()
        ...
        await balancer.stop()
    """

    def __init__(
        self,
        config: BalancerConfig,
        provisioner: Provisioner | None = None,
        logger: Logger | None = None,
        node_id: str | None = None,
    ) -> None:
        self.config = config
        self.node_id = node_id or f"{socket.gethostname()}-{os.getpid()}"

        if logger is None:
            logger = self._create_logger(config)

        self._logger = logger

        if provisioner is None and config.replacement_command:
            provisioner = CommandProvisioner(
                config.replacement_command,
                timeout=config.replacement_timeout,
                logger=logger,
                logger_name=EVENTS_LOGGER,
            )

        elif provisioner is None:
            provisioner = LogOnlyProvisioner(
                logger=logger,
                logger_name=EVENTS_LOGGER,
            )

        self.provisioner = provisioner

        self.registry = BackendRegistry(
            virtual_nodes=config.virtual_nodes,
            logger=logger,
            logger_name=EVENTS_LOGGER,
        )

        self.prober = HealthProber(
            self.registry,
            config=ProbeConfig(
                timeout_seconds=config.probe_timeout,
                period_seconds=config.probe_interval,
                failure_threshold=config.failure_threshold,
                success_threshold=config.success_threshold,
                path=config.health_check_path,
            ),
            logger=logger,
            logger_name=EVENTS_LOGGER,
        )

        self.router = AffinityRouter(self.registry)

        self.reconciler = Reconciler(
            self.registry,
            provisioner,
            min_healthy=config.min_healthy,
            desired_capacity=config.desired_capacity,
            grace_period=config.grace_period,
            interval=config.reconcile_interval,
            reap_after=config.reap_after,
            logger=logger,
            logger_name=EVENTS_LOGGER,
        )

        self.front = LoadBalancerFront(
            self.registry,
            self.router,
            forwarder=BackendForwarder(connect_timeout=config.connect_timeout),
            session_keys=SessionKeyExtractor(config.session_key),
            host=config.listen_host,
            port=config.listen_port,
            request_timeout=config.request_timeout,
            max_concurrency=config.max_concurrency,
            status_path=config.status_path,
            status_provider=self.status,
            fast_probe=self.prober.request_fast_probe,
            logger=logger,
            logger_name=EVENTS_LOGGER,
            node_id=self.node_id,
        )

    @classmethod
    def from_env(
        cls,
        env: Env | None = None,
        env_file: str | None = None,
    ) -> Balancer:
        if env is None:
            env = load_env(Env, env_file=env_file)

        return cls(BalancerConfig.from_env(env))

    @property
    def port(self) -> int:
        return self.front.port

    @property
    def logger(self) -> Logger | None:
        return self._logger

    @staticmethod
    def _create_logger(config: BalancerConfig) -> Logger:
        logging_config = LoggingConfig()
        logging_config.update(
            log_level=config.log_level,
            log_directory=config.logs_directory,
        )

        logger = Logger()

        if config.logs_directory:
            logger.configure(
                name=EVENTS_LOGGER,
                path=os.path.join(config.logs_directory, config.events_logfile),
            )

        else:
            logger.configure(name=EVENTS_LOGGER)

        return logger

    async def start(self) -> int:
        for spec in self.config.backends:
            await self.registry.register(
                Backend(
                    backend_id=spec.backend_id,
                    host=spec.host,
                    port=spec.port,
                )
            )

        await self.prober.start()
        await self.reconciler.start()
        port = await self.front.start()

        if self._logger:
            await self._logger.log(
                ServerInfo(
                    message=(
                        f"Balancing {len(self.registry)} backends "
                        f"(min healthy {self.config.min_healthy}, "
                        f"desired {self.config.desired_capacity})"
                    ),
                    node_host=self.config.listen_host,
                    node_port=port,
                    node_id=self.node_id,
                ),
                name=EVENTS_LOGGER,
            )

        if self._logger and len(self.registry) == 0:
            await self._logger.log(
                ServerWarning(
                    message="No backends configured, requests will get 503 until one registers",
                    node_host=self.config.listen_host,
                    node_port=port,
                    node_id=self.node_id,
                ),
                name=EVENTS_LOGGER,
            )

        return port

    async def stop(self) -> None:
        await self.front.stop()
        await self.reconciler.stop()
        await self.prober.stop()

        if self._logger:
            await self._logger.close()

    async def add_backend(
        self,
        backend_id: str,
        host: str,
        port: int,
        health: BackendHealth = BackendHealth.HEALTHY,
    ) -> Backend:
        return await self.registry.register(
            Backend(
                backend_id=backend_id,
                host=host,
                port=port,
                health=health,
            )
        )

    async def remove_backend(self, backend_id: str) -> Backend | None:
        return await self.registry.remove(backend_id)

    async def drain(
        self,
        backend_id: str,
        timeout: float | None = None,
    ) -> bool:
        return await self.registry.drain(
            backend_id,
            timeout=self.config.drain_timeout if timeout is None else timeout,
        )

    def status(self) -> dict[str, Any]:
        return {
            "node_id": self.node_id,
            "capacity": self.reconciler.status(),
            "backends": [
                {
                    **backend.to_dict(),
                    "in_flight": self.registry.tracker.count(backend.backend_id),
                }
                for backend in self.registry.snapshot()
            ],
        }

    async def run_forever(self) -> None:
        await self.start()
        try:
            await asyncio.Event().wait()

        finally:
            await self.stop()
