import os
from dataclasses import dataclass, field

from dotenv import load_dotenv
from web3 import Web3

load_dotenv()

def get_env_for_chain(base_key: str, chain_id: str):
    """
    Prefer CHAIN_ID-suffixed env (e.g. RPC_URLS_8453) over generic (RPC_URLS).
    Return None if neither is set.
    """
    return os.getenv(f"{base_key}_{chain_id}") or os.getenv(base_key)

# Base mainnet public endpoints (no API key, heterogeneous block-range caps)
DEFAULT_RPC_URLS = (
    "https://mainnet.base.org",
    "https://base.publicnode.com",
    "https://1rpc.io/base",
    "https://base.llamarpc.com",
)
DEFAULT_CHAIN_ID = "8453"
DEFAULT_CONTRACT_ADDRESS = "0xB331328F506f2D35125e367A190e914B1b6830cF"
DEFAULT_EVENT_SIGNATURE = "ActionLogged(address,bytes32,uint256,bytes)"
DEFAULT_ACTION_TAG = "WEEKLY_ADD"

WEEK_MS = 7 * 24 * 60 * 60 * 1000


def event_topic(signature: str) -> str:
    return Web3.to_hex(Web3.keccak(text=signature))


def action_tag_topic(tag: str) -> str:
    """bytes32(tag), right-padded with zeros."""
    raw = tag.encode("utf-8")
    if len(raw) > 32:
        raise RuntimeError(f"ACTION_TAG {tag!r} does not fit in bytes32.")
    return "0x" + raw.ljust(32, b"\x00").hex()


def _int_env(name: str, default: int, chain_id: str) -> int:
    raw = get_env_for_chain(name, chain_id)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        raise RuntimeError(f"{name} must be an integer, got {raw!r}.") from None


def _float_env(name: str, default: float, chain_id: str) -> float:
    raw = get_env_for_chain(name, chain_id)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        raise RuntimeError(f"{name} must be a number, got {raw!r}.") from None


@dataclass(frozen=True)
class Settings:
    chain_id: str = DEFAULT_CHAIN_ID
    rpc_urls: tuple[str, ...] = DEFAULT_RPC_URLS
    contract_address: str = DEFAULT_CONTRACT_ADDRESS.lower()
    event_topic0: str = field(default_factory=lambda: event_topic(DEFAULT_EVENT_SIGNATURE))
    action_topic: str = field(default_factory=lambda: action_tag_topic(DEFAULT_ACTION_TAG))

    # scanning
    max_block_span: int = 10_000
    scan_concurrency: int = 4
    rpc_timeout: float = 10.0
    query_deadline: float = 8.5
    refresh_deadline: float = 60.0

    # block time
    default_seconds_per_block: float = 2.0
    block_time_sample_blocks: int = 15_000
    lookback_safety_blocks: int = 5_000

    # periods and ranking
    period_ms: int = WEEK_MS
    keep_count: int = 250
    visible_count: int = 200

    # storage
    redis_url: str | None = None
    cache_prefix: str = "weekly_points"
    snapshot_ttl: int = 60
    state_ttl: int = 21 * 24 * 60 * 60
    lock_ttl: int = 30

    def __post_init__(self):
        if not self.rpc_urls:
            raise RuntimeError("At least one RPC URL is required (RPC_URLS).")
        if self.max_block_span < 1:
            raise RuntimeError("MAX_BLOCK_SPAN must be >= 1.")
        if self.scan_concurrency < 1:
            raise RuntimeError("SCAN_CONCURRENCY must be >= 1.")
        # the visible leaderboard must always be a subset of the retained set
        if self.keep_count < self.visible_count:
            object.__setattr__(self, "keep_count", self.visible_count)

    @property
    def state_namespace(self) -> str:
        return f"{self.cache_prefix}:{self.chain_id}:{self.contract_address}"

    @classmethod
    def from_env(cls) -> "Settings":
        chain_id = os.getenv("CHAIN_ID", DEFAULT_CHAIN_ID).strip()

        urls_env = get_env_for_chain("RPC_URLS", chain_id)
        if urls_env:
            rpc_urls = tuple(u.strip() for u in urls_env.split(",") if u.strip())
        else:
            rpc_urls = DEFAULT_RPC_URLS

        contract = get_env_for_chain("CONTRACT_ADDRESS", chain_id) or DEFAULT_CONTRACT_ADDRESS
        if not Web3.is_address(contract.lower()):
            raise RuntimeError(f"CONTRACT_ADDRESS (or ..._{chain_id}) is not a valid address: {contract!r}")

        signature = get_env_for_chain("ACTION_EVENT_SIGNATURE", chain_id) or DEFAULT_EVENT_SIGNATURE
        tag = get_env_for_chain("ACTION_TAG", chain_id) or DEFAULT_ACTION_TAG

        return cls(
            chain_id=chain_id,
            rpc_urls=rpc_urls,
            contract_address=contract.lower(),
            event_topic0=event_topic(signature),
            action_topic=action_tag_topic(tag),
            max_block_span=_int_env("MAX_BLOCK_SPAN", 10_000, chain_id),
            scan_concurrency=_int_env("SCAN_CONCURRENCY", 4, chain_id),
            rpc_timeout=_float_env("RPC_TIMEOUT_SECONDS", 10.0, chain_id),
            query_deadline=_float_env("QUERY_DEADLINE_SECONDS", 8.5, chain_id),
            refresh_deadline=_float_env("REFRESH_DEADLINE_SECONDS", 60.0, chain_id),
            default_seconds_per_block=_float_env("DEFAULT_SECONDS_PER_BLOCK", 2.0, chain_id),
            block_time_sample_blocks=_int_env("BLOCK_TIME_SAMPLE_BLOCKS", 15_000, chain_id),
            lookback_safety_blocks=_int_env("LOOKBACK_SAFETY_BLOCKS", 5_000, chain_id),
            keep_count=_int_env("KEEP_COUNT", 250, chain_id),
            visible_count=_int_env("VISIBLE_COUNT", 200, chain_id),
            redis_url=get_env_for_chain("REDIS_URL", chain_id) or None,
            cache_prefix=os.getenv("CACHE_PREFIX", "weekly_points"),
            snapshot_ttl=_int_env("SNAPSHOT_TTL_SECONDS", 60, chain_id),
            state_ttl=_int_env("STATE_TTL_SECONDS", 21 * 24 * 60 * 60, chain_id),
            lock_ttl=_int_env("LOCK_TTL_SECONDS", 30, chain_id),
        )
