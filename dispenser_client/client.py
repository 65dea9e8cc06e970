#!/usr/bin/env python3
"""
Dispenser Hub Device Client
Reference device loop: fetches configuration, raises dose alarms, polls and
executes queued commands, and reports outcomes back to the server
"""

import os
import sys
import json
import time
import logging
from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

import requests

# Configuration - Auto-detect installation directory
INSTALL_DIR = os.path.dirname(os.path.abspath(__file__))
CONFIG_FILE = os.path.join(INSTALL_DIR, 'config.json')
LOG_FILE = os.path.join(INSTALL_DIR, 'logs', 'client.log')
COMMAND_POLL_INTERVAL = 30  # seconds
CONFIG_CHECK_INTERVAL = 300  # 5 minutes
ALARM_CHECK_INTERVAL = 15
REQUEST_TIMEOUT = 10

# Same layout as the server: bit 0 = Monday ... bit 6 = Sunday
ISO_WEEKDAY_TO_BIT = {1: 0, 2: 1, 3: 2, 4: 3, 5: 4, 6: 5, 7: 6}

logger = logging.getLogger(__name__)


def setup_logging():
    """Log to file and stdout"""
    os.makedirs(os.path.dirname(LOG_FILE), exist_ok=True)
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(levelname)s - %(message)s',
        handlers=[
            logging.FileHandler(LOG_FILE),
            logging.StreamHandler(sys.stdout)
        ]
    )


class CommandFailed(Exception):
    """A command could not be executed; the message is reported as detail"""


class DispenserClient:
    """Device-side client for the Dispenser Hub API"""

    def __init__(self, config=None, config_file=CONFIG_FILE, session=None):
        self.config_file = config_file
        self.config = config if config is not None else self.load_config()
        self.session = session or requests.Session()

        self.server_url = self.config.get('server_url', '').rstrip('/')
        self.serial = self.config.get('serial')
        self.secret = self.config.get('secret')

        self.device_id = None
        self.timezone = self.config.get('timezone', 'UTC')
        self.compartments = []
        self.fired = set()
        self.snoozed_until = None
        self.reboot_requested = False

        self.handlers = {
            'snooze': self.handle_snooze,
            'apply_config': self.handle_apply_config,
            'reboot': self.handle_reboot,
        }

        logger.info('Dispenser client initialized')
        logger.info(f'Server: {self.server_url}')
        logger.info(f'Serial: {self.serial}')

    def load_config(self):
        """Load configuration from JSON file"""
        try:
            with open(self.config_file, 'r') as f:
                config = json.load(f)
            logger.info('Configuration loaded successfully')
            return config
        except FileNotFoundError:
            logger.error(f'Config file not found: {self.config_file}')
            logger.info('Creating default config file...')

            default_config = {
                'server_url': 'http://192.168.0.100:5000',
                'serial': None,
                'secret': None,
                'timezone': 'America/Mexico_City'
            }

            self.save_config(default_config)
            return default_config
        except json.JSONDecodeError as e:
            logger.error(f'Invalid JSON in config file: {e}')
            sys.exit(1)

    def save_config(self, config):
        """Save configuration to JSON file"""
        try:
            with open(self.config_file, 'w') as f:
                json.dump(config, f, indent=2)
            logger.info('Configuration saved')
        except OSError as e:
            logger.error(f'Failed to save config: {e}')

    def get_headers(self):
        """Get API request headers"""
        return {'X-Device-Serial': self.serial, 'X-Device-Secret': self.secret}

    def credentials(self):
        return {'serial': self.serial, 'secret': self.secret}

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def fetch_config(self):
        """Download compartments and schedules; returns True on success"""
        try:
            response = self.session.get(
                f'{self.server_url}/api/devices/config',
                headers=self.get_headers(),
                timeout=REQUEST_TIMEOUT
            )

            if response.status_code == 200:
                data = response.json()
                self.device_id = data['deviceId']
                self.timezone = data.get('timezone') or self.timezone
                self.compartments = data.get('compartments', [])
                logger.info(f'Configuration fetched: {len(self.compartments)} compartments')
                return True

            logger.warning(f'Config fetch failed: {response.status_code}')
            return False

        except requests.RequestException as e:
            logger.warning(f'Config fetch error: {e}')
            return False

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def poll_commands(self, since=None):
        """Fetch commands handed out to this device"""
        params = {'since': since} if since else None
        try:
            response = self.session.get(
                f'{self.server_url}/api/commands/poll',
                headers=self.get_headers(),
                params=params,
                timeout=REQUEST_TIMEOUT
            )

            if response.status_code == 200:
                return response.json().get('commands', [])

            logger.warning(f'Command poll failed: {response.status_code}')
            return []

        except requests.RequestException as e:
            logger.warning(f'Command poll error: {e}')
            return []

    def ack_command(self, command_id, status, detail=None):
        """Report the outcome of a command; returns True if the server accepted it"""
        body = dict(self.credentials(), commandId=command_id, status=status)
        if detail:
            body['detail'] = detail[:500]

        try:
            response = self.session.post(
                f'{self.server_url}/api/commands/ack',
                json=body,
                timeout=REQUEST_TIMEOUT
            )

            if response.status_code == 200:
                return True
            if response.status_code == 409:
                logger.warning(f'Command {command_id} no longer awaiting acknowledgement')
            else:
                logger.warning(f'Command ack failed: {response.status_code}')
            return False

        except requests.RequestException as e:
            logger.warning(f'Command ack error: {e}')
            return False

    def execute_command(self, command):
        """
        Run one command through its handler

        Returns:
            (status, detail) where status is 'done' or 'error'
        """
        handler = self.handlers.get(command.get('type'))
        if handler is None:
            return 'error', f"Unsupported command type: {command.get('type')}"

        try:
            detail = handler(command.get('payload') or {})
            return 'done', detail
        except CommandFailed as e:
            return 'error', str(e)

    def process_commands(self):
        """Poll, execute and acknowledge; returns the number of commands handled"""
        commands = self.poll_commands()
        for command in commands:
            status, detail = self.execute_command(command)
            logger.info(f"Command {command['id']} ({command.get('type')}) -> {status}")
            self.ack_command(command['id'], status, detail)
        return len(commands)

    def handle_snooze(self, payload):
        minutes = payload.get('minutes', 5)
        if not isinstance(minutes, int) or isinstance(minutes, bool) or minutes <= 0:
            raise CommandFailed(f'Invalid snooze minutes: {minutes!r}')

        self.snoozed_until = datetime.now(timezone.utc) + timedelta(minutes=minutes)
        return f'Snoozed for {minutes} minutes'

    def handle_apply_config(self, payload):
        if not self.fetch_config():
            raise CommandFailed('Could not fetch configuration')
        return 'Configuration applied'

    def handle_reboot(self, payload):
        self.reboot_requested = True
        return 'Reboot scheduled'

    # ------------------------------------------------------------------
    # Alarms and reporting
    # ------------------------------------------------------------------

    def due_schedules(self, now_local):
        """(compartment, schedule) pairs whose dosing window is open at now_local"""
        bit = ISO_WEEKDAY_TO_BIT[now_local.isoweekday()]
        seconds = now_local.hour * 3600 + now_local.minute * 60 + now_local.second

        due = []
        for compartment in self.compartments:
            if not compartment.get('active', True):
                continue
            for schedule in compartment.get('schedules', []):
                if not (schedule['daysOfWeek'] >> bit) & 1:
                    continue
                hour, minute = (int(part) for part in schedule['timeOfDay'].split(':'))
                start = hour * 3600 + minute * 60
                end = min(start + schedule['windowMinutes'] * 60, 24 * 3600)
                if start <= seconds < end:
                    due.append((compartment, schedule))
        return due

    def start_alarm(self, compartment_id, scheduled_at, title=None, schedule_id=None):
        """Ask the server to notify the owner; returns the number of notifications sent"""
        body = dict(self.credentials(), compartmentId=compartment_id,
                    scheduledAt=scheduled_at.isoformat())
        if schedule_id is not None:
            body['scheduleId'] = schedule_id
        if title:
            body['title'] = title

        try:
            response = self.session.post(
                f'{self.server_url}/api/alarm/start',
                json=body,
                timeout=REQUEST_TIMEOUT
            )

            if response.status_code == 200:
                return response.json().get('notificationsSent', 0)

            logger.warning(f'Alarm start failed: {response.status_code}')
            return 0

        except requests.RequestException as e:
            logger.warning(f'Alarm start error: {e}')
            return 0

    def check_alarms(self, now_utc=None):
        """Start an alarm for every newly due schedule; returns how many were started"""
        now_utc = now_utc or datetime.now(timezone.utc)
        if self.snoozed_until and now_utc < self.snoozed_until:
            return 0
        if self.snoozed_until:
            # Snooze elapsed; let the open windows ring again
            self.snoozed_until = None
            self.fired.clear()

        now_local = now_utc.astimezone(ZoneInfo(self.timezone))
        started = 0
        for compartment, schedule in self.due_schedules(now_local):
            hour, minute = (int(part) for part in schedule['timeOfDay'].split(':'))
            occurrence = now_local.replace(hour=hour, minute=minute, second=0, microsecond=0)
            key = (schedule['id'], occurrence.date().isoformat())
            if key in self.fired:
                continue

            self.fired.add(key)
            self.start_alarm(compartment['id'], occurrence.astimezone(timezone.utc),
                             schedule_id=schedule['id'])
            started += 1
        return started

    def report_dose(self, compartment_id, scheduled_at, status, actual_at=None,
                    delta_weight_g=None, schedule_id=None, notes=None):
        """Send a dose outcome to the server ledger"""
        body = dict(self.credentials(), compartmentId=compartment_id,
                    scheduledAt=scheduled_at.isoformat(), status=status, source='auto')
        if actual_at:
            body['actualAt'] = actual_at.isoformat()
        if delta_weight_g is not None:
            body['deltaWeightG'] = delta_weight_g
        if schedule_id is not None:
            body['scheduleId'] = schedule_id
        if notes:
            body['notes'] = notes

        try:
            response = self.session.post(
                f'{self.server_url}/api/events/dose',
                json=body,
                timeout=REQUEST_TIMEOUT
            )
            if response.status_code == 201:
                return True
            logger.warning(f'Dose report failed: {response.status_code}')
            return False

        except requests.RequestException as e:
            logger.warning(f'Dose report error: {e}')
            return False

    def run(self):
        """Main run loop"""
        logger.info('Starting dispenser client...')

        if not self.serial or not self.secret:
            logger.error('Device serial and secret must be configured. Exiting.')
            sys.exit(1)

        last_command_poll = 0
        last_config_check = 0
        last_alarm_check = 0

        while not self.reboot_requested:
            try:
                current_time = time.time()

                if current_time - last_config_check >= CONFIG_CHECK_INTERVAL:
                    self.fetch_config()
                    last_config_check = current_time

                if current_time - last_alarm_check >= ALARM_CHECK_INTERVAL:
                    self.check_alarms()
                    last_alarm_check = current_time

                if current_time - last_command_poll >= COMMAND_POLL_INTERVAL:
                    self.process_commands()
                    last_command_poll = current_time

                time.sleep(5)

            except KeyboardInterrupt:
                logger.info('Received shutdown signal')
                break
            except Exception as e:
                logger.error(f'Error in main loop: {e}')
                time.sleep(10)

        logger.info('Dispenser client stopped')


def main():
    """Main entry point"""
    setup_logging()
    client = DispenserClient()
    client.run()


if __name__ == '__main__':
    main()
