"""
sniguard - access-controlled front end for a DNS/HTTP/HTTPS proxy container.

Publishes the proxy's ports but rejects every client that is not on an
explicitly maintained IPv4/IPv6 allow-list.
"""

__version__ = "1.0.0"
__author__ = "sniguard maintainers"
