from __future__ import annotations

import hashlib
import math
from dataclasses import dataclass
from typing import Any, MutableSequence, Sequence, TypeVar

MASK_64 = 0xFFFF_FFFF_FFFF_FFFF
T = TypeVar("T")


def derive_stream_seed(master_seed: int, stream_name: str) -> int:
    """Derive a deterministic child RNG seed from (master_seed, stream_name)."""
    digest = hashlib.sha256(f"{master_seed}:{stream_name}".encode("utf-8")).digest()
    return int.from_bytes(digest[:8], byteorder="big", signed=False)


def _rotl(value: int, shift: int) -> int:
    return ((value << shift) | (value >> (64 - shift))) & MASK_64


def _splitmix64(state: int) -> tuple[int, int]:
    state = (state + 0x9E37_79B9_7F4A_7C15) & MASK_64
    z = state
    z = ((z ^ (z >> 30)) * 0xBF58_476D_1CE4_E5B9) & MASK_64
    z = ((z ^ (z >> 27)) * 0x94D0_49BB_1331_11EB) & MASK_64
    return state, z ^ (z >> 31)


@dataclass(frozen=True, order=True)
class Odds:
    """Deciban log-odds.

    ``Odds(0)`` is a coin flip, every +10 multiplies the odds of success by
    ten. Integer valued so that adding and subtracting modifiers stays exact.
    """

    decibans: int

    @classmethod
    def from_prob(cls, p: float) -> "Odds":
        if not 0.0 < p < 1.0:
            raise ValueError("probability must be within (0.0, 1.0)")
        return cls(round(10.0 * math.log10(p / (1.0 - p))))

    def prob(self) -> float:
        return 1.0 - 1.0 / (1.0 + 10.0 ** (self.decibans / 10.0))

    def __add__(self, other: "Odds") -> "Odds":
        return Odds(self.decibans + other.decibans)

    def __sub__(self, other: "Odds") -> "Odds":
        return Odds(self.decibans - other.decibans)


class DeterministicRng:
    """xoshiro256** generator with SplitMix64 seeding.

    Every operation is masked to 64 bits, so the stream is identical on any
    interpreter, word width and byte order. Do not replace with ``random``:
    the save format stores this generator's raw four-word state.
    """

    def __init__(self, seed: int) -> None:
        if isinstance(seed, bool) or not isinstance(seed, int):
            raise ValueError("rng seed must be an integer")
        splitmix_state = seed & MASK_64
        words = []
        for _ in range(4):
            splitmix_state, word = _splitmix64(splitmix_state)
            words.append(word)
        if not any(words):
            words[0] = 1
        self._s: list[int] = words

    def next_u64(self) -> int:
        s = self._s
        result = (_rotl((s[1] * 5) & MASK_64, 7) * 9) & MASK_64
        t = (s[1] << 17) & MASK_64
        s[2] ^= s[0]
        s[3] ^= s[1]
        s[1] ^= s[2]
        s[0] ^= s[3]
        s[2] ^= t
        s[3] = _rotl(s[3], 45)
        return result

    def randbelow(self, n: int) -> int:
        """Uniform integer in ``[0, n)`` by rejection sampling."""
        if n <= 0:
            raise ValueError("randbelow bound must be > 0")
        if n == 1:
            return 0
        limit = (MASK_64 + 1) - ((MASK_64 + 1) % n)
        while True:
            value = self.next_u64()
            if value < limit:
                return value % n

    def randint(self, low: int, high: int) -> int:
        if high < low:
            raise ValueError("randint high must be >= low")
        return low + self.randbelow(high - low + 1)

    def random(self) -> float:
        return (self.next_u64() >> 11) * (1.0 / (1 << 53))

    def choice(self, items: Sequence[T]) -> T:
        if not items:
            raise ValueError("cannot choose from an empty sequence")
        return items[self.randbelow(len(items))]

    def shuffle(self, items: MutableSequence[Any]) -> None:
        for index in range(len(items) - 1, 0, -1):
            swap = self.randbelow(index + 1)
            items[index], items[swap] = items[swap], items[index]

    def one_chance_in(self, n: int) -> bool:
        if n <= 0:
            return False
        return self.randbelow(n) == 0

    def roll(self, odds: Odds) -> bool:
        return self.random() < odds.prob()

    def getstate(self) -> list[int]:
        return list(self._s)

    def setstate(self, state: Sequence[int]) -> None:
        if not isinstance(state, (list, tuple)) or len(state) != 4:
            raise ValueError("rng state must be a list of four integers")
        words: list[int] = []
        for word in state:
            if isinstance(word, bool) or not isinstance(word, int) or not 0 <= word <= MASK_64:
                raise ValueError("rng state words must be unsigned 64-bit integers")
            words.append(word)
        if not any(words):
            raise ValueError("rng state must not be all zero")
        self._s = words
