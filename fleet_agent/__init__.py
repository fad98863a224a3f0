"""Field-device location telemetry agent.

Modules, leaves first:

  errors.py         -> error taxonomy
  models.py         -> samples, pings, operator/asset/session records
  accuracy.py       -> accuracy filter for raw fixes
  offline_queue.py  -> sqlite-backed, capacity-bounded ping queue
  state_store.py    -> persisted operator + session records
  client.py         -> collector HTTP calls (delivery, status, registration)
  connectivity.py   -> reachability probe
  events.py         -> event stream for presentation subscribers
  acquisition.py    -> background / foreground acquisition strategies
  sync.py           -> periodic queue flusher
  tracking.py       -> TrackingController (per-sample path + flusher lifecycle)
  session.py        -> SessionMachine (register / waiting / tracking)
  config.py         -> settings from env / .env / YAML
  observability.py  -> logging setup
  runtime.py        -> wiring from settings
  platforms/        -> positioning runtimes (simulated)
  simulator.py      -> headless development entry point
"""
