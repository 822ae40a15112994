"""
Crawl Engine

An asyncio crawl-orchestration engine with pluggable scheduling, downloading and deduplication.
"""

__version__ = "0.1.0"
__description__ = "A bounded-concurrency crawl engine with robots compliance and pluggable URL deduplication"
