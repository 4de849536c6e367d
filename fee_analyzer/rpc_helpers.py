#!/usr/bin/env python3
"""
RPC Helpers — Fixed-Point Constants, ABI Encoding/Decoding and JSON-RPC Client
===============================================================================

Consolidates the low-level primitives shared by the replay engine and the
chain-state oracle:

  • Fixed-point constants (Q96, Q128, Q256) and tick bounds
  • ABI encoding/decoding (uint256, int256, int24)
  • JSON-RPC client (eth_call, eth_call_batch) pinned to a block height

All constants reference the Ethereum ABI specification:
  https://docs.soliditylang.org/en/latest/abi-spec.html

Terminology:
  • Word:  32 bytes = 256 bits = 64 hex characters
  • Slot:  Position of a 32-byte word in an ABI response
  • Q96:   2^96  — fixed-point denominator for sqrtPriceX96
  • Q128:  2^128 — fixed-point denominator for feeGrowthX128
  • Q256:  2^256 — accumulator width (wraparound boundary)
"""

import httpx
from typing import List, Tuple, Union

# ── ABI Word Constants ──────────────────────────────────────────────────
# Ethereum ABI spec: https://docs.soliditylang.org/en/latest/abi-spec.html

ABI_WORD_HEX = 64            # 32 bytes × 2 hex chars = 64 hex characters
SIGN_BIT = 1 << 255          # Two's complement sign bit for int256

# ── Uniswap V3 Fixed-Point Constants ───────────────────────────────────
# Ref: Uniswap V3 Whitepaper §6.1 — https://uniswap.org/whitepaper-v3.pdf

Q96 = 2 ** 96                # sqrtPriceX96 denominator (FixedPoint96.RESOLUTION)
Q128 = 2 ** 128              # feeGrowthGlobalX128 denominator (FixedPoint128.Q128)
Q192 = 2 ** 192              # (sqrtPriceX96)^2 denominator
Q256 = 2 ** 256              # uint256 accumulator wraparound boundary
MAX_UINT256 = Q256 - 1

FEE_DENOMINATOR = 1_000_000  # fee tiers are in hundredths of a basis point

MIN_TICK = -887272           # TickMath.MIN_TICK
MAX_TICK = 887272            # TickMath.MAX_TICK


# ── ABI Function Selectors ──────────────────────────────────────────────
# First 4 bytes of keccak256(function_signature).

SELECTORS: dict[str, str] = {
    # UniswapV3Pool (read-only state)
    "slot0":                  "0x3850c7bd",  # slot0()
    "liquidity":              "0x1a686502",  # liquidity()
    "feeGrowthGlobal0X128":   "0xf3058399",  # feeGrowthGlobal0X128()
    "feeGrowthGlobal1X128":   "0x46141319",  # feeGrowthGlobal1X128()
    "ticks":                  "0xf30dba93",  # ticks(int24)
}


# ── ABI Encoding ────────────────────────────────────────────────────────

def encode_uint256(value: int) -> str:
    """ABI-encode a uint256 as 32-byte hex (no 0x prefix).

    >>> encode_uint256(1)
    '0000000000000000000000000000000000000000000000000000000000000001'
    """
    return format(value, f'0{ABI_WORD_HEX}x')


def encode_int24(value: int) -> str:
    """ABI-encode an int24 sign-extended to int256 (for ticks).

    >>> encode_int24(-887220)
    'fffffffffffffffffffffffffffffffffffffffffffffffffffffffffff2764c'
    """
    if value < 0:
        value = Q256 + value
    return format(value, f'0{ABI_WORD_HEX}x')


def encode_block_tag(block: Union[int, str]) -> str:
    """JSON-RPC block parameter: hex quantity for heights, passthrough for tags.

    >>> encode_block_tag(100)
    '0x64'
    >>> encode_block_tag("latest")
    'latest'
    """
    if isinstance(block, int):
        if block < 0:
            raise ValueError(f"block must be non-negative, got {block}")
        return hex(block)
    return block


# ── ABI Decoding ────────────────────────────────────────────────────────

def decode_uint(hex_data: str, slot: int = 0) -> int:
    """Decode uint256 from ABI response at 32-byte slot offset.

    Args:
        hex_data: Hex string (without 0x prefix).
        slot: Which 32-byte word to read (0-indexed).
    """
    start = slot * ABI_WORD_HEX
    word = hex_data[start:start + ABI_WORD_HEX]
    if len(word) != ABI_WORD_HEX:
        raise ValueError(f"ABI response too short for slot {slot}")
    return int(word, 16)


def decode_int(hex_data: str, slot: int = 0) -> int:
    """Decode int256 (two's complement) from ABI response.

    Args:
        hex_data: Hex string (without 0x prefix).
        slot: Which 32-byte word to read (0-indexed).
    """
    val = decode_uint(hex_data, slot)
    if val >= SIGN_BIT:
        return val - Q256
    return val


# ── JSON-RPC Client ─────────────────────────────────────────────────────

async def eth_call(
    rpc_url: str, to: str, data: str, block: Union[int, str] = "latest", timeout: int = 20
) -> str:
    """
    Execute eth_call on an EVM node at a given block height.

    Args:
        rpc_url: JSON-RPC endpoint URL (forked node or archive node)
        to: Contract address (0x...)
        data: ABI-encoded calldata (0x + selector + params)
        block: Block height (int) or tag ("latest")
        timeout: HTTP timeout in seconds

    Returns:
        Hex response string (without 0x prefix).

    Raises:
        RuntimeError: If RPC returns an error or empty response.
    """
    payload = {
        "jsonrpc": "2.0",
        "id": 1,
        "method": "eth_call",
        "params": [{"to": to, "data": data}, encode_block_tag(block)],
    }
    async with httpx.AsyncClient(timeout=timeout) as client:
        resp = await client.post(rpc_url, json=payload)
        result = resp.json()
        if "error" in result:
            raise RuntimeError(f"RPC error: {result['error'].get('message', result['error'])}")
        raw = result.get("result", "0x")
        if raw == "0x" or len(raw) < 4:
            raise RuntimeError("Empty response — contract may not exist at this address")
        return raw[2:]  # strip 0x prefix


async def eth_call_batch(
    rpc_url: str,
    calls: List[Tuple[str, str]],
    block: Union[int, str] = "latest",
    timeout: int = 20,
) -> List[str]:
    """
    Batch multiple eth_call requests into a single HTTP request.

    Args:
        rpc_url: JSON-RPC endpoint URL
        calls: List of (contract_address, calldata) tuples
        block: Block height (int) or tag applied to every call
        timeout: HTTP timeout in seconds

    Returns:
        List of hex result strings (without 0x prefix), in same order as calls.
    """
    tag = encode_block_tag(block)
    payloads = []
    for i, (to, data) in enumerate(calls):
        payloads.append({
            "jsonrpc": "2.0",
            "id": i + 1,
            "method": "eth_call",
            "params": [{"to": to, "data": data}, tag],
        })

    async with httpx.AsyncClient(timeout=timeout) as client:
        resp = await client.post(rpc_url, json=payloads)
        results = resp.json()

    # Sort by id and extract results
    if isinstance(results, list):
        results.sort(key=lambda r: r.get("id", 0))
        return [r.get("result", "0x")[2:] if "result" in r else "" for r in results]
    else:
        # Single result (some RPCs don't support batch)
        return [results.get("result", "0x")[2:]]
