"""
logblock package.

Follows sshd in the systemd journal and blocks repeat offenders in nftables,
doubling the hold time each time an address climbs another level.

- attackers: per-address attempt tracking
- escalation: block / unblock decisions
- watcher: the event loop, sweep and firewall recovery
- journal: journalctl-backed event source
- firewall: nftables and dry-run adapters
"""

__version__ = "0.1.0"
