"""ADB Forwarder: USB provisioning for standalone VR headsets.

Watches the adb server for attached Android devices and, for each device
whose product is allow-listed in devices.conf:
  - Bridge: adbutils client for device queries, shell, forwards, installs
  - Events: background device tracker feeding an asyncio queue
  - Provisioning: reinstall companion app, grant permission, forward, launch
  - Manager: dispatch loop running one attempt per connected device
  - Platform tools: adb download and server startup
"""

__version__ = "0.2"
