import asyncio

import pytest

from ink2md.core.cancellation import CancellationToken
from ink2md.core.errors import ConversionCancelled


@pytest.mark.asyncio
async def test_cancel_cancels_registered_futures() -> None:
    token = CancellationToken()
    future = asyncio.get_running_loop().create_future()
    token.register(future)

    token.cancel()

    assert token.cancelled is True
    assert future.cancelled()


@pytest.mark.asyncio
async def test_register_after_cancel_cancels_immediately() -> None:
    token = CancellationToken()
    token.cancel()
    future = asyncio.get_running_loop().create_future()

    token.register(future)

    assert future.cancelled()


@pytest.mark.asyncio
async def test_unregistered_future_survives_cancel() -> None:
    token = CancellationToken()
    future = asyncio.get_running_loop().create_future()
    token.register(future)
    token.unregister(future)

    token.cancel()

    assert not future.cancelled()
    future.cancel()


def test_raise_if_cancelled() -> None:
    token = CancellationToken()
    token.raise_if_cancelled()
    token.cancel()
    with pytest.raises(ConversionCancelled):
        token.raise_if_cancelled()
