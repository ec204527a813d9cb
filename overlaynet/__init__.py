"""Layered YAML configuration, a certificate-aware stateful firewall and DNS answers for overlay hosts."""

__version__ = "0.1.0"
__all__ = ["config", "packet", "dns_records", "firewall_rules", "firewall"]