import bisect
import ipaddress
from typing import Iterable, List, NamedTuple, Tuple, Union

Address = Union[str, int, ipaddress.IPv4Address]

_MAX_U32 = 0xFFFFFFFF


class CIDRBlock(NamedTuple):
    network: int
    prefix: int

    @classmethod
    def parse(cls, text: str) -> "CIDRBlock":
        """
        Parse 'a.b.c.d/n' or a bare 'a.b.c.d' (treated as /32).
        Host bits are cleared; IPv6 and junk raise ValueError.
        """
        text = (text or "").strip()
        if not text:
            raise ValueError("empty CIDR entry")
        net = ipaddress.ip_network(text, strict=False)
        if net.version != 4:
            raise ValueError(f"not an IPv4 range: {text}")
        return cls(int(net.network_address), net.prefixlen)

    @classmethod
    def canonical(cls, network: int, prefix: int) -> "CIDRBlock":
        if not 0 <= prefix <= 32:
            raise ValueError(f"prefix length out of range: {prefix}")
        if not 0 <= network <= _MAX_U32:
            raise ValueError(f"network address out of range: {network}")
        return cls(network & _mask(prefix), prefix)

    @property
    def first(self) -> int:
        return self.network

    @property
    def last(self) -> int:
        return self.network | (~_mask(self.prefix) & _MAX_U32)

    def __str__(self) -> str:
        return f"{ipaddress.IPv4Address(self.network)}/{self.prefix}"


def _mask(prefix: int) -> int:
    return (_MAX_U32 << (32 - prefix)) & _MAX_U32


def _to_int(address: Address) -> int:
    if isinstance(address, int):
        if not 0 <= address <= _MAX_U32:
            raise ValueError(f"address out of range: {address}")
        return address
    if isinstance(address, ipaddress.IPv4Address):
        return int(address)
    return int(ipaddress.IPv4Address(str(address).strip()))


class RangeSet:
    """
    Immutable union of IPv4 CIDR blocks.

    Overlapping and nested blocks (providers publish both) are folded into
    disjoint [first, last] intervals at build time, so membership is one
    bisect over interval starts plus a single bound check.
    """

    __slots__ = ("_blocks", "_starts", "_ends")

    def __init__(self, blocks: Tuple[CIDRBlock, ...], starts: Tuple[int, ...], ends: Tuple[int, ...]):
        self._blocks = blocks
        self._starts = starts
        self._ends = ends

    @classmethod
    def build(cls, blocks: Iterable[CIDRBlock]) -> "RangeSet":
        canon = sorted({CIDRBlock.canonical(b.network, b.prefix) for b in blocks})

        starts: List[int] = []
        ends: List[int] = []
        for b in sorted(canon, key=lambda b: (b.first, b.last)):
            if ends and b.first <= ends[-1] + 1:
                if b.last > ends[-1]:
                    ends[-1] = b.last
                continue
            starts.append(b.first)
            ends.append(b.last)

        return cls(tuple(canon), tuple(starts), tuple(ends))

    @property
    def blocks(self) -> Tuple[CIDRBlock, ...]:
        return self._blocks

    @property
    def intervals(self) -> List[Tuple[int, int]]:
        return list(zip(self._starts, self._ends))

    def contains(self, address: Address) -> bool:
        try:
            ip = _to_int(address)
        except ValueError:
            return False
        idx = bisect.bisect_right(self._starts, ip) - 1
        return idx >= 0 and ip <= self._ends[idx]

    def __contains__(self, address: Address) -> bool:
        return self.contains(address)

    def __len__(self) -> int:
        return len(self._blocks)

    def __bool__(self) -> bool:
        return bool(self._blocks)

    def __eq__(self, other) -> bool:
        if not isinstance(other, RangeSet):
            return NotImplemented
        return self._starts == other._starts and self._ends == other._ends

    def __hash__(self) -> int:
        return hash((self._starts, self._ends))

    def __repr__(self) -> str:
        return f"RangeSet(blocks={len(self._blocks)}, intervals={len(self._starts)})"
