"""vmdeploy package."""

__all__ = [
    "cli",
    "config",
    "constants",
    "control",
    "detect",
    "exceptions",
    "guest",
    "models",
    "network",
    "phases",
    "power",
    "seed",
    "status",
    "template",
    "users",
    "utils",
]
