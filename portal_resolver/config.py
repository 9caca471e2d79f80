# config.py – constants shared by the resolution engine
# ---------------------------------------------------------------------------
# Values here are fixed protocol facts (header strings, path conventions,
# proxy templates).  Only timeouts, the relay and the listen address may be
# overridden from the environment.
# ---------------------------------------------------------------------------

from __future__ import annotations
import os
from typing import List, Tuple

# ---------------------------------------------------------------------------
# CONFIG
# ---------------------------------------------------------------------------
def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    return float(raw) if raw else default

HTTP_TIMEOUT    = _env_float("PORTAL_RESOLVER_HTTP_TIMEOUT", 10)
PROBE_TIMEOUT   = _env_float("PORTAL_RESOLVER_PROBE_TIMEOUT", 5)
REACH_TIMEOUT   = _env_float("PORTAL_RESOLVER_REACH_TIMEOUT", 6)
OP_TIMEOUT      = _env_float("PORTAL_RESOLVER_OP_TIMEOUT", 60)
RELAY_URL       = os.environ.get("PORTAL_RESOLVER_RELAY_URL", "")
LISTEN_HOST     = os.environ.get("PORTAL_RESOLVER_HOST", "0.0.0.0")
LISTEN_PORT     = int(os.environ.get("PORTAL_RESOLVER_PORT", "8080"))

# 2xx codes that still mean "nothing useful here"
BAD_CODES       = {204}

DEFAULT_GROUP   = "Ungrouped"
DEFAULT_TZ      = "Europe/London"
DEFAULT_LANG    = "en"

# the portal rejects requests lacking the MAG signature
STB_USER_AGENT = ("Mozilla/5.0 (QtEmbedded; U; Linux; C) AppleWebKit/533.3 "
                  "(KHTML, like Gecko) MAG200 stbapp ver: 2 rev: 250 Safari/533.3")
STB_X_USER_AGENT = "Model: MAG250; Link: WiFi"
STB_TYPE        = "MAG250"
STB_VERSION     = ("ImageDescription: 0.2.18-r14-pub-250; ImageDate: Fri Jan 15 15:20:44 EET 2016; "
                   "PORTAL version: 5.6.6; API Version: JS API version: 328; "
                   "STB API version: 134; Player Engine version: 0x566")

BROWSER_USER_AGENT = ("Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
                      "(KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36")

STALKER = "stalker"
XTREAM  = "xtream"

# (path, dialect), most common first; order is part of the contract
PATH_CONVENTIONS: List[Tuple[str, str]] = [
    ("/portal.php",                     STALKER),
    ("/server/load.php",                STALKER),
    ("/stalker_portal/server/load.php", STALKER),
    ("/c/",                             STALKER),
    ("/player_api.php",                 XTREAM),
    ("/stalker_portal.php",             STALKER),
]

# suffixes users paste along with the host; longest first
KNOWN_SUFFIXES: List[str] = [
    "/stalker_portal/server/load.php", "/stalker_portal/c/", "/stalker_portal.php",
    "/server/load.php", "/player_api.php", "/portal.php", "/load.php",
    "/stalker_portal", "/c/", "/c",
]

# REST-like channel list variants, relative to the probed endpoint
REST_CHANNEL_VARIANTS: List[str] = [
    "?type=itv&action=get_live_streams",
    "?action=get_live_streams",
    "?type=get_live_streams",
    "/get_live_streams",
    "/channels",
    "/live_streams",
]

# (name, template, wraps_json); {url} is replaced with the quoted target
PROXY_TEMPLATES: List[Tuple[str, str, bool]] = [
    ("codetabs",  "https://api.codetabs.com/v1/proxy?quest={url}", False),
    ("corsproxy", "https://corsproxy.org/?{url}",                  False),
    ("allorigins","https://api.allorigins.win/get?url={url}",      True),
]

# a portal answering 200 with one of these in the body has dropped our token
AUTH_FAILURE_MARKERS = ("Authorization failed", "invalid token")
