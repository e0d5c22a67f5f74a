import pytest

from weekly_points.config import Settings

from ._chain_helpers import ENDPOINTS


@pytest.fixture
def settings():
    return Settings(
        rpc_urls=ENDPOINTS,
        max_block_span=10_000,
        scan_concurrency=2,
        keep_count=250,
        visible_count=200,
    )
