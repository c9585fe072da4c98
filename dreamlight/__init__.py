"""
Dreamlight — Admin Back End for a FiveM Roleplay Community
============================================================
Serves the staff dashboard and the public site: whitelist applications,
rules, team roster, partners, live chat, community votes, payments, and
the Discord bot that keeps roles and status in sync.

Package layout::

    dreamlight/
    ├── config.py          # YAML → typed Python config
    ├── constants.py       # Shared limits, colours, role ranks
    ├── errors.py          # PanelError hierarchy → {"error": ...}
    ├── database/
    │   ├── engine.py      # SQLAlchemy engine + async helper
    │   ├── models.py      # All ORM models
    │   └── seed.py        # Default server_settings rows
    ├── services/
    │   ├── auth_service.py         # Signup, login, sessions, verification
    │   ├── security_service.py     # Audit log, failed logins, IP limits
    │   ├── settings_service.py     # server_settings + kill switch
    │   ├── permission_service.py   # Staff roles, permissions, promotions
    │   ├── application_service.py  # Whitelist applications workflow
    │   ├── content_service.py      # Rules, partners, team, packages …
    │   ├── chat_service.py         # Live chat + missed-chat detection
    │   ├── email_service.py        # Resend client + templates
    │   ├── discord_service.py      # REST client, role sync, webhook log
    │   ├── cfx_status.py           # status.cfx.re Atom feed
    │   ├── fivem_service.py        # players.json / info.json polling
    │   ├── twitch_service.py       # Helix live-stream lookup
    │   ├── payment_service.py      # Stripe Checkout + revenue metrics
    │   ├── vote_service.py         # Community votes
    │   ├── analytics_service.py    # Dashboard overview widgets
    │   └── log_buffer.py           # In-memory log tail for the viewer
    ├── bot/
    │   ├── core.py        # Bot subclass, cog loader
    │   └── cogs/
    │       ├── tasks.py   # Heartbeat, missed chats, stats poll, cleanup
    │       └── status.py  # /server and /cfx slash commands
    └── api/
        ├── main.py        # FastAPI app
        ├── deps.py        # Session-token auth dependencies
        ├── rate_limit.py  # Per-staff mutation throttle
        └── routes/        # Public, staff and integration endpoints
"""

__version__ = "0.1.0"
