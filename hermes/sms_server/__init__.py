"""
Hermes SMS Service - CDC-driven customer projection and SMS fan-out.

This package keeps a local SQLite projection of upstream customers and
their SMS contact preferences in sync with change-data-capture streams,
and texts every opted-in customer when a notification is published.

Architecture:
    ┌──────────────┐ ┌──────────────┐ ┌───────────────┐ ┌─────────────┐
    │  customers   │ │ preferences  │ │ notifications │ │ retry queue │◀──┐
    └──────┬───────┘ └──────┬───────┘ └───────┬───────┘ └──────┬──────┘   │
           │                │                 │                │          │
           ▼                ▼                 ▼                ▼          │
    ┌─────────────────────────────────────────────────────────────────┐   │
    │        StreamReaders (one per topic, commit on acknowledge)     │   │
    └────────────────────────────────┬────────────────────────────────┘   │
                                     ▼                                    │
                            ┌─────────────────┐                           │
                            │   Dispatcher    │                           │
                            └────────┬────────┘                           │
                                     ▼                                    │
           ┌──────────────┐   ┌─────────────┐   ┌──────────────────┐      │
           │   SQLite     │◀──│  Handlers   │──▶│  DeliveryFanout  │──────┘
           │ (customers)  │   └─────────────┘   │   (AWS SNS)      │ failed sends
           └──────────────┘                     └──────────────────┘

Invariants:
    - A record is committed only after its handler succeeded
    - Records of one stream are handled and committed in stream order
    - A failed delivery becomes exactly one retry record
    - Preferences never create customers

Version: see _version.py.
"""

from ._version import __version__

__all__ = ["__version__"]
