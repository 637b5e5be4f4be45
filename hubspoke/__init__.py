"""
hubspoke - local transport between a hub process and its spoke collectors.

The hub binds a unix socket and serves aggregated data. Spokes collect raw
market data, connect to the hub, announce which markets/indexes they own
and stream operational frames over a '#'-delimited JSON protocol.

Packages:
- core:   role configuration (hub vs. spoke)
- spine:  framing codec, membership registry, hub listener, spoke client,
          event dispatcher and the process entry point
"""

__version__ = "0.1.0"
