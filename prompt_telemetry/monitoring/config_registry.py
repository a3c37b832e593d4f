import asyncio
from typing import Dict, List, Optional

import structlog

from .models import MonitoringConfig, TenantAppKey
from ..storage.metric_store import MetricStore


logger = structlog.get_logger(__name__)


class ConfigRegistry:
    """Monitoring configs keyed by (tenant, app), persisted through the MetricStore.

    Mutations are serialised by a lock and write through to the store before
    the in-memory view changes. Readers get the current object without locking.
    """

    def __init__(self, store: MetricStore):
        self.store = store
        self._configs: Dict[TenantAppKey, MonitoringConfig] = {}
        self._lock = asyncio.Lock()

    def get(self, tenant_id: str, app_id: str) -> Optional[MonitoringConfig]:
        return self._configs.get((tenant_id, app_id))

    def all(self) -> List[MonitoringConfig]:
        return list(self._configs.values())

    def __len__(self) -> int:
        return len(self._configs)

    def __contains__(self, key: TenantAppKey) -> bool:
        return key in self._configs

    async def add(self, config: MonitoringConfig):
        async with self._lock:
            await self.store.save_config(config)
            replaced = config.key in self._configs
            self._configs[config.key] = config

        logger.info("Monitoring config saved",
                    tenant_id=config.tenant_id,
                    app_id=config.app_id,
                    real_time=config.real_time_processing,
                    replaced=replaced)

    async def remove(self, tenant_id: str, app_id: str) -> bool:
        async with self._lock:
            deleted = await self.store.delete_config(tenant_id, app_id)
            existed = self._configs.pop((tenant_id, app_id), None) is not None

        logger.info("Monitoring config removed", tenant_id=tenant_id, app_id=app_id,
                    existed=existed or deleted)
        return existed or deleted

    async def load(self) -> int:
        """Replace the in-memory view with what the store holds"""
        async with self._lock:
            configs = await self.store.load_configs()
            self._configs = {config.key: config for config in configs}

        logger.info("Monitoring configs loaded", count=len(configs))
        return len(configs)
