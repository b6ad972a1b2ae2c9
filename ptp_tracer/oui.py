"""
Vendor lookup for clock identities, backed by scapy's manufacturer database.
"""

from typing import Optional

from scapy.all import conf


def lookup_vendor(mac: str) -> Optional[str]:
    """
    Resolves the OUI (first three octets) of a MAC address to a vendor name.

    Args:
        mac (str): Colon separated MAC address, e.g. "00:1b:21:aa:bb:cc".

    Returns:
        str: The short vendor name, or None if it is not known.
    """
    manufdb = getattr(conf, "manufdb", None)
    if manufdb is None:
        return None
    try:
        short_name, _long_name = manufdb.lookup(mac.lower())
    except (KeyError, ValueError, TypeError):
        return None
    return short_name or None
