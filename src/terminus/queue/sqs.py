"""SQS client setup using aiobotocore.

Session and connection management live here so that the poller only sees a
client object with ``receive_message`` and ``delete_message``.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any

from aiobotocore.session import get_session
from botocore.config import Config
from botocore.exceptions import ClientError

from terminus.core.exceptions import ConfigurationError, QueueError
from terminus.core.logging_config import get_logger
from terminus.core.retry_config import (
    RETRY_CONFIG_DEFAULT,
    SQS_EXCEPTIONS,
    RetryConfig,
    create_retry_decorator,
)

if TYPE_CHECKING:
    from terminus.core.config import TerminusConfig

logger = get_logger(__name__)

# Added to the long-poll wait so a receive is never cut off by the HTTP layer.
_READ_TIMEOUT_SLACK_SECONDS = 10


@asynccontextmanager
async def create_sqs_client(config: TerminusConfig) -> AsyncIterator[Any]:
    """Yield an aiobotocore SQS client built from the Terminus configuration.

    Credentials come from the usual AWS sources (environment, shared config,
    instance role).
    """
    session = get_session()
    client_config = Config(
        read_timeout=config.receive_wait_seconds + _READ_TIMEOUT_SLACK_SECONDS,
        retries={"mode": "standard"},
    )
    async with session.create_client(
        "sqs",
        region_name=config.aws_region,
        endpoint_url=config.aws_endpoint_url,
        config=client_config,
    ) as client:
        logger.debug("sqs_client_created", region=config.aws_region)
        yield client


def is_queue_url(queue: str) -> bool:
    return queue.startswith(("https://", "http://"))


async def resolve_queue_url(
    client: Any,
    queue: str,
    retry_config: RetryConfig | None = None,
) -> str:
    """Return the URL of a queue given its name or URL.

    Raises:
        ConfigurationError: If no queue was given.
        QueueError: If the queue does not exist or cannot be reached.
    """
    if not queue:
        raise ConfigurationError("queue name or URL is required (TERMINUS_QUEUE)")
    if is_queue_url(queue):
        return queue

    retry = create_retry_decorator(retry_config or RETRY_CONFIG_DEFAULT, SQS_EXCEPTIONS)

    @retry
    async def _get_queue_url() -> dict[str, Any]:
        return await client.get_queue_url(QueueName=queue)

    try:
        response = await _get_queue_url()
    except (ClientError, *SQS_EXCEPTIONS) as exc:
        raise QueueError(f"look up queue {queue}: {exc}", queue=queue) from exc

    url = response["QueueUrl"]
    logger.info("queue_resolved", queue=queue, queue_url=url)
    return url
