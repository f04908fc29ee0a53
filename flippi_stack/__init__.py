"""
flippi_stack

Control core for Melee tournament stream setups:
- one persistent obs-websocket connection to OBS (auth latch + bounded retry)
- process polling for OBS, Project Clippi and Slippi Launcher/Dolphin
- game-capture detection (black-frame check on an OBS source screenshot)
- start / stop / switch of the whole recording stack per event folder
- status bridge (HTTP + WebSocket) for a HUD
"""

APP_NAME = "Flippi Stack"
APP_VERSION = "0.4.0"
APP_DISPLAY = f"{APP_NAME} {APP_VERSION}"

__version__ = APP_VERSION
