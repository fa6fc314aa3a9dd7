"""Asyncio tools for running, monitoring and tracking reconnection of OpenConnect VPN sessions."""

__version__ = "1.2.2"