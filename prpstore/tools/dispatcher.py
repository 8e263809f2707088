"""Tool call dispatcher: validate, authorize, execute, envelope.

Each call moves RECEIVED -> VALIDATED -> AUTHORIZED -> EXECUTED -> ENVELOPED
and stops at the first failure. Nothing with a side effect (extraction call,
transaction) runs before both validation and authorization have passed.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import uuid
from typing import Any

import anthropic

from prpstore.config import Config
from prpstore.errors import (
    UNAVAILABLE,
    AuthorizationError,
    ExtractionError,
    InternalError,
    PersistenceError,
    PrpStoreError,
)
from prpstore.extraction.prp import DocumentExtractor
from prpstore.storage.db import ConnectionPool
from prpstore.storage.gateway import PersistenceGateway
from prpstore.tools.handlers import build_registry
from prpstore.tools.policy import WRITE, AuthorizationPolicy, Identity
from prpstore.tools.registry import Operation, OperationRegistry

logger = logging.getLogger(__name__)


def success_envelope(data: Any) -> dict:
    return {"ok": True, "data": data}


class Dispatcher:
    """Routes a named tool call through the validation/authorization/execution pipeline.

    Safe to call concurrently: each call gets its own pooled connection and
    transaction, and no state is shared between calls.
    """

    def __init__(
        self,
        registry: OperationRegistry,
        policy: AuthorizationPolicy,
        gateway: PersistenceGateway,
        extractor: DocumentExtractor,
        timeout: float | None = None,
    ) -> None:
        self._registry = registry
        self._policy = policy
        self._gateway = gateway
        self._extractor = extractor
        self._timeout = timeout

    @classmethod
    def from_config(cls, config: Config) -> Dispatcher:
        """Wire the production collaborators: SQLite pool, Claude, static policy."""
        client = None
        if config.anthropic_api_key:
            client = anthropic.Anthropic(
                api_key=config.anthropic_api_key, max_retries=config.max_retries
            )
        extractor = DocumentExtractor(
            client, model=config.model, max_chars=config.max_document_chars
        )
        pool = ConnectionPool(config.db_path, size=config.pool_size, timeout=config.pool_timeout)
        return cls(
            registry=build_registry(),
            policy=AuthorizationPolicy(config.privileged_users),
            gateway=PersistenceGateway(pool),
            extractor=extractor,
            timeout=config.operation_timeout,
        )

    @property
    def registry(self) -> OperationRegistry:
        return self._registry

    @property
    def policy(self) -> AuthorizationPolicy:
        return self._policy

    def close(self) -> None:
        self._gateway.close()

    async def dispatch(self, name: str, arguments: Any, identity: Identity) -> dict:
        correlation_id = uuid.uuid4().hex
        try:
            operation = self._registry.get(name)
            args = self._registry.validate(name, arguments)

            decision = self._policy.authorize(operation, identity)
            if not decision.allowed:
                raise AuthorizationError(decision.reason)

            data = await self._execute(operation, args, identity, correlation_id)
        except PrpStoreError as e:
            logger.info(
                f"[{correlation_id}] {name} by {identity.handle or '<anonymous>'} "
                f"failed: {e.kind} ({e})"
            )
            return e.to_envelope(correlation_id)
        except Exception:
            logger.exception(f"[{correlation_id}] {name} failed unexpectedly")
            return InternalError().to_envelope(correlation_id)

        logger.debug(f"[{correlation_id}] {name} by {identity.handle} ok")
        return success_envelope(data)

    async def _execute(
        self, operation: Operation, args, identity: Identity, correlation_id: str
    ) -> Any:
        prepared = None
        if operation.prepare is not None:
            try:
                prepared = await asyncio.wait_for(
                    asyncio.to_thread(operation.prepare, self._extractor, args),
                    self._timeout,
                )
            except asyncio.TimeoutError:
                logger.warning(
                    f"[{correlation_id}] {operation.name}: extraction timed out after {self._timeout}s"
                )
                raise ExtractionError(UNAVAILABLE) from None

        cancelled = threading.Event()

        def body(repo):
            return operation.body(repo, args, identity, prepared)

        try:
            return await asyncio.wait_for(
                asyncio.to_thread(
                    self._gateway.run,
                    body,
                    write=operation.tier == WRITE,
                    cancelled=cancelled,
                    label=f"[{correlation_id}] {operation.name}",
                ),
                self._timeout,
            )
        except asyncio.TimeoutError:
            cancelled.set()
            # A write already past its cancel check still commits; the gateway logs it.
            logger.warning(
                f"[{correlation_id}] {operation.name}: transaction timed out after {self._timeout}s"
            )
            raise PersistenceError(UNAVAILABLE) from None
        except asyncio.CancelledError:
            # The worker thread keeps running; make it roll back instead of committing.
            cancelled.set()
            raise
