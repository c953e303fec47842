"""Client-side event-stream engine.

This package turns the agent backend's event feed into a consistent local
picture of sessions, messages and tool calls:

- **connection**: One reconnecting feed per process, directory interest refcounts
- **dispatcher**: Raw payload -> typed ``DomainEvent`` (unknown/malformed dropped)
- **reconciler**: ``(store, event) -> store`` transition rules
- **store**: Id-keyed derived store with change subscription
- **resync**: Status snapshot after every (re)connect
- **visibility**: Visible/focused reporting to the relay
- **notifications**: Side channel for errors and advisories
- **service**: Wiring of the above behind one front-end surface
"""
