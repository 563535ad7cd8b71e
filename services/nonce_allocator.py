"""
Sequence-number (nonce) allocation for one sending address.

The starting nonce is read from the node once; after that every send takes
the next number synchronously, before its asynchronous submission starts.
"""

import logging
from typing import List

logger = logging.getLogger(__name__)


class NonceAllocator:
    """Hands out consecutive nonces for a single address"""

    def __init__(self, address: str, starting_nonce: int):
        if starting_nonce < 0:
            raise ValueError("starting_nonce must be >= 0")
        self.address = address
        self.starting_nonce = starting_nonce
        self._next = starting_nonce

    def next(self) -> int:
        nonce = self._next
        self._next += 1
        return nonce

    def take(self, count: int) -> List[int]:
        """Reserve count consecutive nonces at once"""
        return [self.next() for _ in range(count)]

    def release(self, nonce: int) -> bool:
        """
        Return a nonce whose transaction never reached the node.

        Only the most recently issued nonce can be returned; anything older
        would leave a gap that blocks every later transaction.
        """
        if nonce == self._next - 1:
            self._next -= 1
            logger.debug(f"↩️ NONCE_RELEASED: {self.address} nonce={nonce}")
            return True
        logger.warning(f"⚠️ NONCE_RELEASE_SKIPPED: {self.address} nonce={nonce} next={self._next}")
        return False

    @property
    def issued(self) -> int:
        return self._next - self.starting_nonce

    @property
    def peek(self) -> int:
        return self._next
