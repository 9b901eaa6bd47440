"""agentlab controller daemon."""

__version__ = "0.4.0"
__commit__ = "unknown"
__build_date__ = "unknown"


def version_string() -> str:
    """Return the build identification line printed by ``agentlabd -version``."""
    return f"agentlabd version={__version__} commit={__commit__} date={__build_date__}"
