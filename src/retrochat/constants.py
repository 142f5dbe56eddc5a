"""
RetroChat - Global Constants and Configuration Values

This module defines all constants used throughout the RetroChat package.
All magic numbers and configuration defaults are centralized here.

Author: retrochat contributors
Version: 1.0.0
"""

# Version Information
VERSION = "1.0.0"
APP_NAME = "RetroChat"
AUTHOR = "retrochat contributors"

# Session Code
SESSION_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnpqrstuvwxyz23456789"
SESSION_ID_LENGTH = 6
SESSION_KEY_LENGTH = 6
SESSION_CODE_LENGTH = SESSION_ID_LENGTH + SESSION_KEY_LENGTH
SHARE_LINK_PARAM = "join"
ROOM_NAMESPACE = "retrochat"

# Cryptography Constants
KDF_SALT = b"RETRO_CHAT_FIXED_SALT_V1"  # Shared by every session, see DESIGN.md
KDF_ITERATIONS = 100_000
KEY_SIZE = 32  # 256 bits for AES-256-GCM
IV_SIZE = 12  # 96 bits for GCM
TAG_SIZE = 16
DECRYPTION_FAILED_TEXT = "?? [Decryption Failed] ??"

# Protocol
PEER_JOINED_NOTICE = "*** PEER JOINED THE CHANNEL ***"
SYSTEM_SENDER = "SYSTEM"
UNKNOWN_SENDER = "Peer"
MAX_FRAME_SIZE = 256 * 1024  # 256 KB
MAX_TEXT_MESSAGE_SIZE = 64 * 1024  # 64 KB

# Connection Timeouts (seconds)
CONNECT_TIMEOUT = 5.5
RECONNECT_DELAY = 1.0  # debounce before resuming candidate cycling
RECONNECT_BACKOFF_BASE = 1.0
RECONNECT_BACKOFF_MULTIPLIER = 2
MAX_RECONNECT_DELAY = 30.0

# Typing / receipts
TYPING_INDICATOR_TIMEOUT = 3.0  # remote flag clears after this much silence
TYPING_SEND_THROTTLE = 1.0  # at most one TYPING frame per window
READ_RECEIPT_WINDOW = 10  # recent inbound messages re-acknowledged on focus

# WebRTC
DEFAULT_ICE_SERVERS = [
    "stun:stun.l.google.com:19302",
    "stun:global.stun.twilio.com:3478",
]
DATA_CHANNEL_LABEL = "retrochat"

# Signaling server (PeerJS compatible)
DEFAULT_SIGNALING_SERVERS = [
    "wss://0.peerjs.com:443/peerjs",
]
SIGNALING_KEY = "peerjs"
SIGNALING_HEARTBEAT_INTERVAL = 5.0  # seconds

# Mesh discovery (WebTorrent trackers)
DEFAULT_TRACKERS = [
    "wss://tracker.webtorrent.dev",
    "wss://tracker.openwebtorrent.com",
    "wss://tracker.btorrent.xyz",
    "wss://tracker.files.fm:7073/announce",
]
TRACKER_ANNOUNCE_INTERVAL = 33.0  # seconds
TRACKER_OFFER_POOL_SIZE = 3
TRACKER_HASH_LENGTH = 20
MESH_MAX_PEERS = 1

# Pub/sub relay (MQTT over WebSocket)
DEFAULT_BROKERS = [
    "wss://broker.emqx.io:8084/mqtt",
    "wss://broker.hivemq.com:8884/mqtt",
    "wss://test.mosquitto.org:8081/mqtt",
]
RELAY_TOPIC_PREFIX = "retrochat"
RELAY_KEEPALIVE = 30  # seconds
RELAY_QOS = 1

# Transport backends
BACKEND_RELAY = "relay"
BACKEND_SIGNALING = "signaling"
BACKEND_MESH = "mesh"
DEFAULT_BACKEND = BACKEND_RELAY

# File Paths
DEFAULT_DATA_DIR = "~/.retrochat"
CONFIG_FILENAME = "config.toml"
LOGS_DIR = "logs"
LOG_FILENAME = "retrochat.log"

# Logging Configuration
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
LOG_MAX_BYTES = 10 * 1024 * 1024  # 10 MB
LOG_BACKUP_COUNT = 5

# Session State Machine
STATE_HISTORY_LIMIT = 100
