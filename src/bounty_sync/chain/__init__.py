"""EVM integration components."""

from bounty_sync.chain.adapter import Web3ChainAdapter

__all__ = ["Web3ChainAdapter"]
