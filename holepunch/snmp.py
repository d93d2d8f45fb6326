"""Connection statistics counters."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field, fields
from typing import List, Tuple

_COLUMNS: Tuple[Tuple[str, str], ...] = (
    ("BytesSent", "bytes_sent"),
    ("BytesReceived", "bytes_received"),
    ("MaxConn", "max_conn"),
    ("ActiveOpens", "active_opens"),
    ("PassiveOpens", "passive_opens"),
    ("CurrEstab", "curr_estab"),
    ("InErrs", "in_errs"),
    ("InCsumErrors", "in_csum_errors"),
    ("KCPInErrors", "kcp_in_errors"),
    ("InPkts", "in_pkts"),
    ("OutPkts", "out_pkts"),
    ("InSegs", "in_segs"),
    ("OutSegs", "out_segs"),
    ("InBytes", "in_bytes"),
    ("OutBytes", "out_bytes"),
    ("RetransSegs", "retrans_segs"),
    ("FastRetransSegs", "fast_retrans_segs"),
    ("EarlyRetransSegs", "early_retrans_segs"),
    ("LostSegs", "lost_segs"),
    ("RepeatSegs", "repeat_segs"),
    ("FECParityShards", "fec_parity_shards"),
    ("FECErrs", "fec_errs"),
    ("FECRecovered", "fec_recovered"),
    ("FECShortShards", "fec_short_shards"),
)


@dataclass
class Snmp:
    """Network statistics; every counter is updated under a lock."""

    bytes_sent: int = 0
    bytes_received: int = 0
    max_conn: int = 0
    active_opens: int = 0
    passive_opens: int = 0
    curr_estab: int = 0
    in_errs: int = 0
    in_csum_errors: int = 0
    kcp_in_errors: int = 0
    in_pkts: int = 0
    out_pkts: int = 0
    in_segs: int = 0
    out_segs: int = 0
    in_bytes: int = 0
    out_bytes: int = 0
    retrans_segs: int = 0
    fast_retrans_segs: int = 0
    early_retrans_segs: int = 0
    lost_segs: int = 0
    repeat_segs: int = 0
    fec_recovered: int = 0
    fec_errs: int = 0
    fec_parity_shards: int = 0
    fec_short_shards: int = 0
    _lock: threading.Lock = field(
        default_factory=threading.Lock, init=False, repr=False, compare=False
    )

    @staticmethod
    def _counter_names() -> List[str]:
        return [f.name for f in fields(Snmp) if not f.name.startswith("_")]

    def add(self, field: str, delta: int = 1) -> int:
        """Add ``delta`` to a counter and return its new value."""
        if field.startswith("_") or field not in self._counter_names():
            raise KeyError(field)
        with self._lock:
            value = getattr(self, field) + delta
            setattr(self, field, value)
            return value

    def header(self) -> List[str]:
        """Column names, in the order used by :meth:`to_slice`."""
        return [title for title, _ in _COLUMNS]

    def to_slice(self) -> List[str]:
        """Current counter values as strings."""
        snapshot = self.copy()
        return [str(getattr(snapshot, attr)) for _, attr in _COLUMNS]

    def copy(self) -> "Snmp":
        """A consistent snapshot of the counters."""
        with self._lock:
            values = {name: getattr(self, name) for name in self._counter_names()}
        return Snmp(**values)

    def reset(self) -> None:
        """Set every counter back to zero."""
        with self._lock:
            for name in self._counter_names():
                setattr(self, name, 0)


DEFAULT_SNMP = Snmp()
"""Process-wide statistics collector."""