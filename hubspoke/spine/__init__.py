"""
hubspoke spine - unix-socket transport between the hub and its spokes.

Components:
- schemas:     Message model and '#'-delimited JSON wire frames
- framing:     per-connection frame reassembly (FrameBuffer)
- registry:    hub-side membership registry (which spoke owns what)
- hub:         HubListener, accepts spokes and routes lookups
- spoke:       SpokeClient, one outbound connection with reconnect
- dispatcher:  EventDispatcher, op-keyed subscriptions for collaborators
- node:        process entry point (hub or spoke)
"""
