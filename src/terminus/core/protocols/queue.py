from typing import Any, Protocol, runtime_checkable


@runtime_checkable
class QueueClient(Protocol):
    """The two SQS calls the poller makes.

    An aiobotocore SQS client satisfies this as-is; tests pass a fake.
    """

    async def receive_message(self, **kwargs: Any) -> dict[str, Any]: ...

    async def delete_message(self, **kwargs: Any) -> dict[str, Any]: ...
