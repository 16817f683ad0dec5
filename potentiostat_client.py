#!/usr/bin/env python3
"""
Python client for the potentiostat BLE GATT service.

Writes config records and start/stop control bytes, and subscribes to the
status and results characteristics. Notification payloads are handed to
callbacks untouched; reassembly and state live in ExperimentSession.

Transport failures surface as ConnectionError. There is no retry here.

Usage:
    from potentiostat_client import PotentiostatClient, start_experiment

    client = PotentiostatClient()
    client.on_status = session.on_status
    client.on_results = session.on_telemetry
    client.on_disconnect = lambda: session.set_connected(False)
    await client.connect("AA:BB:CC:DD:EE:FF")
    session.set_connected(True)
    await start_experiment(client, session)
    ...
    await client.close()
"""

import asyncio
import logging

from bleak import BleakClient, BleakScanner
from bleak.exc import BleakError

import config
from protocol import CMD_START, hex_str

log = logging.getLogger("potentiostat_client")

TRANSPORT_ERRORS = (BleakError, OSError, asyncio.TimeoutError)


async def scan(timeout=None, name_prefix=None):
    """Scan for potentiostats. Returns [{address, name, rssi}], strongest first.

    Devices that advertise no name are skipped.
    """
    if timeout is None:
        timeout = config.get("scan_timeout")
    if name_prefix is None:
        name_prefix = config.get("device_name_prefix")
    try:
        found = await BleakScanner.discover(timeout=timeout, return_adv=True)
    except TRANSPORT_ERRORS as e:
        raise ConnectionError(f"Scan failed: {e}") from e
    devices = []
    for device, adv in found.values():
        name = adv.local_name or device.name
        if not name:
            continue
        if name_prefix and not name.startswith(name_prefix):
            continue
        devices.append({"address": device.address, "name": name, "rssi": adv.rssi})
    devices.sort(key=lambda d: d["rssi"] if d["rssi"] is not None else -999, reverse=True)
    log.info(f"Scan found {len(devices)} device(s)")
    return devices


class PotentiostatClient:
    def __init__(self, address=None):
        self.address = address
        self._client = None
        self._subscribed = []
        self._expected_disconnect = False
        self.on_status = None  # callback(bytes)
        self.on_results = None  # callback(bytes)
        self.on_disconnect = None  # callback()

    @property
    def connected(self):
        return self._client is not None and self._client.is_connected

    async def connect(self, address=None):
        """Connect to the device at `address` (or the one given at construction)."""
        address = address or self.address
        if not address:
            raise ValueError("No device address given")
        if self.connected:
            await self.close()
        client = BleakClient(
            address,
            disconnected_callback=self._handle_disconnect,
            timeout=config.get("connect_timeout"),
        )
        self._expected_disconnect = False
        try:
            await client.connect()
        except TRANSPORT_ERRORS as e:
            raise ConnectionError(f"Connect to {address} failed: {e}") from e
        self._client = client
        self.address = address
        log.info(f"Connected to potentiostat {address}")

    async def close(self):
        """Unsubscribe and disconnect. Does not fire on_disconnect."""
        self._expected_disconnect = True
        client = self._client
        if client is None:
            return
        await self.unsubscribe()
        try:
            await client.disconnect()
        except TRANSPORT_ERRORS:
            log.debug("disconnect error", exc_info=True)
        self._client = None
        log.info("Disconnected from potentiostat")

    def _handle_disconnect(self, _client):
        self._subscribed = []
        if self._expected_disconnect:
            return
        self._client = None
        log.warning("Connection to potentiostat lost")
        if self.on_disconnect:
            try:
                self.on_disconnect()
            except Exception:
                log.debug("on_disconnect callback error", exc_info=True)

    async def _write(self, char_key, data):
        client = self._client
        if client is None or not client.is_connected:
            raise ConnectionError("Not connected to potentiostat")
        log.debug(f"write {char_key}: {hex_str(data)}")
        try:
            await client.write_gatt_char(config.get(char_key), bytes(data), response=True)
        except TRANSPORT_ERRORS as e:
            raise ConnectionError(f"Write failed: {e}") from e

    async def write_config(self, record):
        """Write an encoded config record."""
        await self._write("config_char_uuid", record)
        log.info(f"Config written ({len(record)} bytes)")

    async def send_command(self, command):
        """Write a single-byte control command (CMD_START / CMD_STOP)."""
        await self._write("control_char_uuid", command)

    def _dispatch(self, callback_name):
        def handler(_sender, data):
            callback = getattr(self, callback_name)
            if callback:
                try:
                    callback(bytes(data))
                except Exception:
                    log.debug(f"{callback_name} callback error", exc_info=True)

        return handler

    async def subscribe(self):
        """Start status and results notifications. Idempotent."""
        client = self._client
        if client is None or not client.is_connected:
            raise ConnectionError("Not connected to potentiostat")
        for char_key, callback_name in (("status_char_uuid", "on_status"), ("results_char_uuid", "on_results")):
            if char_key in self._subscribed:
                continue
            try:
                await client.start_notify(config.get(char_key), self._dispatch(callback_name))
            except TRANSPORT_ERRORS as e:
                raise ConnectionError(f"Subscribe failed: {e}") from e
            self._subscribed.append(char_key)

    async def unsubscribe(self):
        """Release notification subscriptions."""
        client = self._client
        subscribed, self._subscribed = self._subscribed, []
        if client is None or not client.is_connected:
            return
        for char_key in subscribed:
            try:
                await client.stop_notify(config.get(char_key))
            except TRANSPORT_ERRORS:
                log.debug(f"stop_notify {char_key} failed", exc_info=True)


async def apply_config(client, session):
    """Write the session's config record without starting a run."""
    await client.write_config(session.apply())


async def start_experiment(client, session):
    """Start a run: session transition, then config, subscribe, start byte.

    The session moves to running first so an early status notification
    does not race the start. If any write fails the session is rolled back
    and the ConnectionError propagates.
    """
    record = session.start()
    try:
        await client.write_config(record)
        await client.subscribe()
        await client.send_command(CMD_START)
    except ConnectionError:
        session.cancel_start()
        raise


async def stop_experiment(client, session):
    """Request a stop. The session is stopping even if the write fails."""
    await client.send_command(session.stop())


async def detach(client, session):
    """Stop consuming telemetry: release subscriptions and drop the partial record."""
    await client.unsubscribe()
    session.teardown()
