"""Flattening of network protocol counters into per-protocol events."""

from __future__ import annotations

from typing import Any, Dict, Mapping, Optional

__all__ = ["map_proc_net_counters", "combine_map", "check_max_conn"]

_UINT64_LIMIT = 1 << 64
_INT64_SIGN = 1 << 63


def map_proc_net_counters(raw: Mapping[str, Mapping[str, Any]]) -> Dict[str, Any]:
    """Group netstat and SNMP counters by protocol.

    ``raw`` holds a ``"netstat"`` mapping with ``"ip_ext"`` and ``"tcp_ext"``
    tables and an ``"snmp"`` mapping with ``"ip"``, ``"tcp"``, ``"udp"``,
    ``"udp_lite"``, ``"icmp_msg"`` and ``"icmp"`` tables. Missing tables are
    treated as empty.
    """
    netstat = raw.get("netstat") or {}
    snmp = raw.get("snmp") or {}
    return {
        "ip": combine_map(netstat.get("ip_ext"), snmp.get("ip")),
        "tcp": combine_map(netstat.get("tcp_ext"), snmp.get("tcp")),
        "udp": dict(snmp.get("udp") or {}),
        "udp_lite": dict(snmp.get("udp_lite") or {}),
        "icmp": combine_map(snmp.get("icmp_msg"), snmp.get("icmp")),
    }


def combine_map(
    map1: Optional[Mapping[str, int]], map2: Optional[Mapping[str, int]]
) -> Dict[str, int]:
    """Merge two counter tables; entries of ``map2`` win on clashes."""
    combined: Dict[str, int] = {}
    for table in (map1 or {}, map2 or {}):
        for key, value in table.items():
            combined[key] = check_max_conn(key, value)
    return combined


def check_max_conn(key: str, value: int) -> int:
    """Reinterpret the signed ``MaxConn`` counter; pass others through.

    ``MaxConn`` is a signed integer (RFC 2012) while other values are unsigned
    64-bit counters, so its bits are read as a signed 64-bit value.
    """
    if key != "MaxConn":
        return value
    value %= _UINT64_LIMIT
    return value - _UINT64_LIMIT if value >= _INT64_SIGN else value