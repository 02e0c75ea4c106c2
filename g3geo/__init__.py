"""
g3geo - Decentralized, Verifiable Geospatial Event Layer

Peers publish signed, location-bound, time-limited reports (road hazards,
live traffic speed, proof-of-visit business reviews). Other peers verify,
cache and corroborate them without a trusted server.

Modules:
    - core: Signed report codec, validation, proximity, regional cache, persistence
    - privacy: Session-salted coordinate obfuscation
    - gates: Replay guard and QR proof-of-presence reviews
    - transport: P2P and session channel interfaces, HTTP relay
    - coordinator: Hazard and traffic orchestration for one peer
"""

__version__ = "1.0.0"
__license__ = "MIT"
