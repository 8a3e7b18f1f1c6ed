"""
MongoRole — The Node Supervisor

Runs identically on every instance of the database role.
Responsibilities:
- Resolve this instance's ordinal and mongod endpoint
- Attach the durable per-ordinal data volume
- Launch and supervise the local mongod process
- On ordinal 0 only: initiate the replica set and reconcile its membership
- Apply live configuration changes (log verbosity, recycle-on-exit)
- Step down, shut down and detach cleanly on stop
"""
