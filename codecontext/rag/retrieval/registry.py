"""
集合注册表：跟踪集合生命周期并缓存声明维度。

状态机：
    ABSENT ──ensure──▶ CREATING ──成功──▶ READY ──drop──▶ DROPPED ──ensure──▶ CREATING …
                          └──失败──▶ 回到之前的状态

说明：
- 只有 READY 状态的集合接受写入、检索与列表查询；
- 每个集合名一把 asyncio.Lock，状态迁移在锁内一次完成，并发的首次创建只触发一次后端调用；
- 维度缓存可随时丢弃，需要时通过 describe_collection 从后端重建。
"""

import asyncio
from enum import Enum
from typing import Dict, Optional

from codecontext.core.exceptions import DimensionMismatch
from codecontext.infra.logging import get_logger
from codecontext.rag.vectordb.base import VectorStore

logger = get_logger(__name__)


class CollectionState(str, Enum):
    ABSENT = "absent"
    CREATING = "creating"
    READY = "ready"
    DROPPED = "dropped"


class CollectionRegistry:
    """集合注册表，由编排器持有，不使用全局状态。"""

    def __init__(self, store: VectorStore) -> None:
        self.store = store
        self._states: Dict[str, CollectionState] = {}
        self._dimensions: Dict[str, Optional[int]] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock(self, name: str) -> asyncio.Lock:
        lock = self._locks.get(name)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[name] = lock
        return lock

    def state(self, name: str) -> CollectionState:
        return self._states.get(name, CollectionState.ABSENT)

    def dimension(self, name: str) -> Optional[int]:
        """缓存中的维度；未缓存时返回 None。"""
        return self._dimensions.get(name)

    async def ensure_collection(self, name: str, dimension: int, description: Optional[str] = None) -> int:
        """
        确保集合存在且维度一致。

        Args:
            name: 集合名
            dimension: 期望维度
            description: 集合描述（仅创建时写入）

        Returns:
            int: 集合维度

        Raises:
            DimensionMismatch: 集合已存在且维度不同
        """
        dimension = int(dimension)
        async with self._lock(name):
            previous = self.state(name)
            if previous == CollectionState.READY:
                cached = self._dimensions.get(name)
                if cached is None:
                    cached = await self.store.describe_collection(name)
                    self._dimensions[name] = cached
                if cached is not None and cached != dimension:
                    raise DimensionMismatch(
                        f"集合 '{name}' 维度为 {cached}，请求维度 {dimension}",
                        expected=cached, actual=dimension,
                        operation="ensure_collection", target=name,
                    )
                return cached or dimension

            self._states[name] = CollectionState.CREATING
            try:
                await self.store.create_collection(name, dimension, description)
            except BaseException:
                self._states[name] = previous
                raise
            self._states[name] = CollectionState.READY
            self._dimensions[name] = dimension
            logger.info(f"集合就绪: {name} (dim={dimension}, 之前状态={previous.value})")
            return dimension

    async def require_ready(self, name: str) -> Optional[int]:
        """
        确认集合可用，必要时从后端重建缓存。

        Returns:
            Optional[int]: 集合维度（后端未记录时为 None）

        Raises:
            CollectionNotFound: 后端不存在该集合
        """
        if self.state(name) == CollectionState.READY and name in self._dimensions:
            return self._dimensions[name]
        async with self._lock(name):
            if self.state(name) == CollectionState.READY and name in self._dimensions:
                return self._dimensions[name]
            dimension = await self.store.describe_collection(name)
            self._states[name] = CollectionState.READY
            self._dimensions[name] = dimension
            logger.debug(f"从后端重建集合缓存: {name} (dim={dimension})")
            return dimension

    async def drop_collection(self, name: str) -> None:
        """删除集合；不存在时为空操作。"""
        async with self._lock(name):
            previous = self.state(name)
            await self.store.drop_collection(name)
            self._dimensions.pop(name, None)
            if previous in (CollectionState.READY, CollectionState.CREATING):
                self._states[name] = CollectionState.DROPPED
            logger.info(f"集合已删除: {name} (之前状态={previous.value})")

    def forget(self, name: str) -> None:
        """丢弃缓存，下一次访问时从后端重建。"""
        self._states.pop(name, None)
        self._dimensions.pop(name, None)

    def snapshot(self) -> Dict[str, Dict[str, object]]:
        return {
            name: {"state": state.value, "dimension": self._dimensions.get(name)}
            for name, state in self._states.items()
        }
