"""
Campaign Dispatch Engine

Turns a stored newsletter campaign into a quota-bounded, multi-recipient
send, either when its scheduled time passes or on a direct "send now".

Modules:
    recipients.py   — Tag / status / exclusion audience resolution
    quota.py        — Monthly email limit, rollover, atomic reserve + commit
    unsubscribe.py  — Signed, expiring unsubscribe tokens and footer HTML
    claims.py       — Campaign state machine, atomic claim, lease + stale sweep
    transport.py    — Async SMTP transport (aiosmtplib)
    dispatcher.py   — Per-recipient personalisation and send loop
    pipeline.py     — validate → claim → dispatch → commit / rollback
    scheduler.py    — Recurring poller with start/stop lifecycle
    background.py   — Bounded queue for fire-and-forget side effects
    alerts.py       — Webhook alerting (Slack/Discord/Telegram)
    errors.py       — Error taxonomy with machine-readable reason codes
"""
