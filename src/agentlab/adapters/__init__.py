"""Adapters - concrete hypervisor and secret store implementations."""
