"""totpkeeper: TOTP account vault with live codes and remote sync."""

__version__ = "0.1.0"
