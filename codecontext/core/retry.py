"""
指数退避重试。

职责：
- 对嵌入请求与存储请求的瞬时失败（RateLimited / NetworkError / DatabaseConnectionError）进行有限次数重试；
- 永久错误（鉴权、模型不支持、维度不符、过滤不支持等）立即抛出，不重试；
- 重试耗尽后抛出最后一次的原始异常，而不是通用异常。
"""

from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Tuple, Type, TypeVar

from codecontext.core.exceptions import RateLimited, RetrievalError, TransientError
from codecontext.infra.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


@dataclass
class RetryConfig:
    """
    重试配置。

    Attributes:
        max_attempts: 最大尝试次数（含首次）
        initial_delay_ms: 首次退避时长（毫秒）
        max_delay_ms: 单次退避上限（毫秒）
        backoff_multiplier: 指数退避倍数
        jitter: 是否添加 ±25% 随机抖动
    """
    max_attempts: int = 3
    initial_delay_ms: float = 250.0
    max_delay_ms: float = 8000.0
    backoff_multiplier: float = 2.0
    jitter: bool = True

    @classmethod
    def from_config_manager(cls, config_manager=None) -> "RetryConfig":
        """从配置中心 retry 节读取重试参数。"""
        from codecontext.config import get_config_manager

        cfg = (config_manager or get_config_manager()).get_retry_config()
        return cls(
            max_attempts=max(1, int(cfg.get("max_attempts", cls.max_attempts))),
            initial_delay_ms=float(cfg.get("initial_delay_ms", cls.initial_delay_ms)),
            max_delay_ms=float(cfg.get("max_delay_ms", cls.max_delay_ms)),
            backoff_multiplier=float(cfg.get("backoff_multiplier", cls.backoff_multiplier)),
            jitter=bool(cfg.get("jitter", cls.jitter)),
        )


def calculate_delay(attempt: int, config: RetryConfig, error: Optional[BaseException] = None) -> float:
    """
    计算第 attempt 次失败后的退避时长。

    Args:
        attempt: 失败次序（从 0 开始）
        config: 重试配置
        error: 本次失败的异常；若为带 retry_after 的 RateLimited，则至少等待该时长

    Returns:
        退避秒数
    """
    delay_ms = min(
        config.initial_delay_ms * (config.backoff_multiplier ** attempt),
        config.max_delay_ms,
    )
    if config.jitter:
        delay_ms *= 0.75 + (random.random() * 0.5)

    delay = delay_ms / 1000.0
    if isinstance(error, RateLimited) and error.retry_after:
        delay = max(delay, min(float(error.retry_after), config.max_delay_ms / 1000.0))
    return delay


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    config: Optional[RetryConfig] = None,
    retry_on: Tuple[Type[BaseException], ...] = (TransientError,),
    operation_name: str = "operation",
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """
    以指数退避执行异步操作。

    Args:
        operation: 无参协程工厂，每次尝试都会重新调用以生成新的协程
        config: 重试配置，缺省使用默认值
        retry_on: 允许重试的异常类型
        operation_name: 用于日志的操作名
        sleep: 退避等待函数（测试时可替换）

    Returns:
        operation 的返回值

    Raises:
        最后一次尝试的原始异常；非可重试异常立即抛出
    """
    config = config or RetryConfig()
    attempts = max(1, int(config.max_attempts))

    for attempt in range(attempts):
        try:
            result = await operation()
            if attempt > 0:
                logger.info(f"{operation_name} 在第 {attempt + 1} 次尝试后成功")
            return result
        except retry_on as e:
            if attempt >= attempts - 1:
                logger.error(f"{operation_name} 重试 {attempts} 次后仍失败: {e}")
                raise
            delay = calculate_delay(attempt, config, e)
            logger.warning(
                f"{operation_name} 第 {attempt + 1}/{attempts} 次尝试失败: {e}，{delay:.3f}s 后重试"
            )
            await sleep(delay)

    # range 至少执行一次，理论上不可达
    raise RuntimeError(f"{operation_name} 未执行")


async def run_blocking(
    fn: Callable[..., T],
    *args: Any,
    config: Optional[RetryConfig] = None,
    operation: str = "operation",
    target: Optional[str] = None,
    translate: Optional[Callable[[Exception, str, Optional[str]], RetrievalError]] = None,
    **kwargs: Any,
) -> T:
    """
    在线程中执行阻塞调用，异常包装为检索异常后按退避策略重试瞬时错误。

    Args:
        fn: 阻塞调用
        *args, **kwargs: 调用参数
        config: 重试配置
        operation: 操作名（异常上下文与日志）
        target: 集合名或提供商标识
        translate: 非检索异常的映射函数，缺省包装为 RetrievalError（永久错误）

    Returns:
        fn 的返回值
    """
    async def attempt() -> T:
        try:
            return await asyncio.to_thread(fn, *args, **kwargs)
        except RetrievalError as e:
            raise e.with_context(operation, target)
        except Exception as e:
            if translate is None:
                raise RetrievalError(f"{operation} 失败: {e}", operation, target) from e
            raise translate(e, operation, target) from e

    return await retry_async(attempt, config, operation_name=f"{target}.{operation}" if target else operation)
