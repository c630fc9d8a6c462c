from .blocklist import BlockRecord, BlockTable, RateLimitRecord

__all__ = ["BlockRecord", "BlockTable", "RateLimitRecord"]
