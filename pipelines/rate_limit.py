"""Politeness delays between page requests."""

import logging
import random
from typing import Optional

from .options import CrawlOptions
from .signals import CancellationToken

logger = logging.getLogger(__name__)


class RateLimiter:
    """Computes and applies the delay after each processed URL."""

    def __init__(self, rng: Optional[random.Random] = None):
        self.rng = rng or random.Random()

    def compute_delay(self, options: CrawlOptions, floor: Optional[float] = None) -> float:
        if options.random_delay:
            delay = self.rng.uniform(options.min_delay, options.max_delay)
        else:
            delay = options.rate_limit
        if floor is not None and options.respect_crawl_delay:
            delay = max(delay, floor)
        return delay

    async def wait(self, options: CrawlOptions, token: CancellationToken,
                   floor: Optional[float] = None) -> bool:
        """Sleep for the computed delay. Returns True if the token cut it short."""
        delay = self.compute_delay(options, floor)
        if delay > 0:
            logger.debug(f"Rate limiting: sleeping {delay:.2f}s")
        return await token.sleep(delay)
