"""
Telemetry snapshot shape.

Agents answer `/system/stats` with a flat payload (`cpu`, `totalmem`,
`fsSize`, ...). The SSH probe emits the same field names. Everything that is
persisted goes through `normalize_stats` first, so the node snapshot and the
time series always carry the nested cpu/memory/disk/network/system shape.
"""
from fleetpanel.models import utcnow


def _num(value, default=0.0) -> float:
    if value is None:
        return default
    if isinstance(value, str):
        value = value.strip().rstrip('%')
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def normalize_stats(raw: dict, node_id=None) -> dict:
    raw = raw or {}
    cpu_raw = raw.get('cpu')
    if isinstance(cpu_raw, dict):
        cpu_usage = _num(cpu_raw.get('usage'))
    else:
        cpu_usage = _num(cpu_raw)

    total = int(_num(raw.get('totalmem')))
    free = int(_num(raw.get('freemem')))
    swap_total = int(_num(raw.get('swapTotal')))
    swap_free = int(_num(raw.get('swapFree')))

    disks = []
    for fs in raw.get('fsSize') or []:
        disks.append({
            'filesystem': fs.get('fs'),
            'mount': fs.get('mount'),
            'type': fs.get('type'),
            'size': fs.get('size'),
            'used': fs.get('used'),
            'available': fs.get('available'),
            'usage_percent': _num(fs.get('use')),
        })

    network = []
    for name, interfaces in (raw.get('networkInterfaces') or {}).items():
        if 'lo' in name or not interfaces:
            continue
        network.append({
            'interface': name,
            'addresses': [i.get('address') for i in interfaces if i.get('family') == 'IPv4'],
        })

    return {
        'timestamp': utcnow().isoformat(),
        'node_id': node_id,
        'cpu': {
            'usage': cpu_usage,
            'cores': int(_num(raw.get('cpuCount'), 1)) or 1,
            'load_average': raw.get('loadavg') or [0, 0, 0],
            'model': raw.get('cpuModel') or 'Unknown',
        },
        'memory': {
            'total': total,
            'free': free,
            'used': total - free,
            'usage_percent': (total - free) / total * 100 if total else 0.0,
            'swap_total': swap_total,
            'swap_free': swap_free,
            'swap_used': swap_total - swap_free,
        },
        'disk': disks,
        'network': network,
        'system': {
            'platform': raw.get('platform') or 'unknown',
            'distro': raw.get('distro') or 'unknown',
            'release': raw.get('release') or 'unknown',
            'arch': raw.get('arch') or 'unknown',
            'hostname': raw.get('hostname') or 'unknown',
            'uptime': _num(raw.get('uptime')),
        },
        'processes': raw.get('processes') or [],
        'temperature': raw.get('temperature') or {},
    }


def usage_percent(resources: dict | None, metric: str) -> float | None:
    """Reads a cpu/memory/disk usage percentage from a snapshot.

    Accepts the nested snapshot shape as well as flat numbers or "NN%"
    strings. Disk is the fullest mount. Returns None when the metric is absent.
    """
    if not resources:
        return None
    value = resources.get(metric)
    if value is None:
        return None
    if isinstance(value, dict):
        key = 'usage' if metric == 'cpu' else 'usage_percent'
        inner = value.get(key, value.get('percentage'))
        return None if inner is None else _num(inner)
    if isinstance(value, list):
        percents = [_num(d.get('usage_percent', d.get('percentage')))
                    for d in value if isinstance(d, dict)]
        return max(percents) if percents else None
    return _num(value)
