"""Tests for telemetry normalization and the SSH stats parser."""
from types import SimpleNamespace

import pytest

from conftest import agent_stats
from fleetpanel.services.ssh import host_key_fingerprint, parse_stats_output
from fleetpanel.services.telemetry import normalize_stats, usage_percent

SSH_STATS_OUTPUT = """\
@@cpu1
cpu  100 0 100 800 0 0 0 0
@@cpu2
cpu  150 0 150 900 0 0 0 0
@@mem
8000 2000
@@swap
1000 1000
@@uptime
123.45
@@cores
4
@@host
box
@@disk
/dev/sda1 / ext4 1000 900 100 90%
"""


class TestNormalizeStats:

    def test_agent_payload_becomes_nested_snapshot(self):
        snapshot = normalize_stats(agent_stats(cpu=20.0), node_id=7)

        assert snapshot['node_id'] == 7
        assert snapshot['cpu']['usage'] == 20.0
        assert snapshot['cpu']['cores'] == 4
        assert snapshot['memory']['usage_percent'] == pytest.approx(50.0)
        assert snapshot['memory']['used'] == 4 * 1024 ** 3
        assert snapshot['disk'][0]['mount'] == '/'
        assert snapshot['disk'][0]['usage_percent'] == 40.0
        assert snapshot['system']['hostname'] == 'node'

    def test_empty_payload_has_safe_defaults(self):
        snapshot = normalize_stats({})

        assert snapshot['cpu']['usage'] == 0.0
        assert snapshot['memory']['usage_percent'] == 0.0
        assert snapshot['disk'] == []
        assert snapshot['system']['platform'] == 'unknown'

    def test_loopback_interfaces_are_dropped(self):
        raw = {'networkInterfaces': {
            'lo': [{'address': '127.0.0.1', 'family': 'IPv4'}],
            'eth0': [{'address': '10.0.0.5', 'family': 'IPv4'}, {'address': 'fe80::1', 'family': 'IPv6'}],
        }}
        assert normalize_stats(raw)['network'] == [{'interface': 'eth0', 'addresses': ['10.0.0.5']}]


class TestUsagePercent:

    def test_nested_snapshot(self):
        snapshot = normalize_stats(agent_stats(cpu=33.0, disk_use=70.0))
        assert usage_percent(snapshot, 'cpu') == 33.0
        assert usage_percent(snapshot, 'memory') == pytest.approx(50.0)
        assert usage_percent(snapshot, 'disk') == 70.0

    def test_flat_numbers_and_percent_strings(self):
        assert usage_percent({'cpu': 95, 'memory': '42%'}, 'cpu') == 95.0
        assert usage_percent({'cpu': 95, 'memory': '42%'}, 'memory') == 42.0

    def test_disk_is_the_fullest_mount(self):
        resources = {'disk': [{'usage_percent': 10}, {'usage_percent': 91}]}
        assert usage_percent(resources, 'disk') == 91.0

    def test_missing_metric_is_none(self):
        assert usage_percent({'cpu': 10}, 'memory') is None
        assert usage_percent(None, 'cpu') is None


class TestSSHStats:

    def test_parse_stats_output(self):
        stats = parse_stats_output(SSH_STATS_OUTPUT)

        assert stats['cpu'] == 50.0
        assert stats['totalmem'] == 8000
        assert stats['freemem'] == 2000
        assert stats['cpuCount'] == 4
        assert stats['hostname'] == 'box'
        assert stats['uptime'] == 123.45
        assert stats['fsSize'][0]['use'] == 90.0

        snapshot = normalize_stats(stats)
        assert snapshot['memory']['usage_percent'] == pytest.approx(75.0)

    def test_missing_sections_do_not_break_parsing(self):
        stats = parse_stats_output('@@host\nbox\n')
        assert stats['cpu'] == 0.0
        assert 'totalmem' not in stats
        assert stats['hostname'] == 'box'

    def test_host_key_fingerprint_format(self):
        key = SimpleNamespace(asbytes=lambda: b'host-key-bytes')
        fingerprint = host_key_fingerprint(key)

        assert fingerprint.startswith('SHA256:')
        assert not fingerprint.endswith('=')
        assert fingerprint == host_key_fingerprint(key)
