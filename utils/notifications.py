"""
Notification Service
Fans a single alert out to every web push endpoint of a user and prunes
endpoints the push service reports as gone
"""
import json
import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import datetime
from typing import Any, Dict, List, NamedTuple, Optional, Tuple

import requests
from flask import current_app
from pywebpush import webpush, WebPushException

from models import db, Compartment, Device, PushSubscription, utcnow
from utils.errors import ConfigurationError, DeliveryFailure

logger = logging.getLogger(__name__)

ALARM_TITLE = 'Time for your medication'
DEFAULT_ROUTE = '/dashboard'


class DispatchResult(NamedTuple):
    sent: int
    total: int
    removed: int

    def as_counts(self) -> Dict[str, int]:
        return {'sent': self.sent, 'total': self.total}


def _deliver(subscription_info: Dict[str, Any], payload: str, vapid_private_key: str,
             vapid_claims: Dict[str, str], timeout: int, ttl: int) -> None:
    """Send one push message; any failure is raised as DeliveryFailure"""
    try:
        webpush(
            subscription_info=subscription_info,
            data=payload,
            vapid_private_key=vapid_private_key,
            vapid_claims=dict(vapid_claims),
            timeout=timeout,
            ttl=ttl
        )
    except WebPushException as e:
        status = e.response.status_code if e.response is not None else None
        raise DeliveryFailure(str(e), status=status)
    except requests.RequestException as e:
        # Timeouts and connection errors are ordinary per-endpoint failures
        raise DeliveryFailure(str(e))


def snooze_command_request(data: Dict[str, Any], minutes: Optional[int] = None) -> Dict[str, Any]:
    """commands-create body for the 'snooze' action of a delivered alarm"""
    if minutes is None:
        minutes = current_app.config['SNOOZE_DEFAULT_MINUTES']
    return {
        'deviceId': data['deviceId'],
        'type': 'snooze',
        'payload': {'minutes': minutes},
    }


class NotificationService:
    """Service for delivering push notifications"""

    @staticmethod
    def build_payload(title: str, body: str, data: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Wire payload read by the client notification handler

        Args:
            title: Notification title
            body: Notification text
            data: Structured context for follow-up actions

        Returns:
            Dict with title, body, icon, badge and data
        """
        return {
            'title': title,
            'body': body,
            'icon': current_app.config['PUSH_ICON'],
            'badge': current_app.config['PUSH_BADGE'],
            'data': data or {},
        }

    @staticmethod
    def _vapid_settings() -> Tuple[str, Dict[str, str]]:
        private_key = current_app.config.get('VAPID_PRIVATE_KEY')
        public_key = current_app.config.get('VAPID_PUBLIC_KEY')
        if not private_key or not public_key:
            logger.error('VAPID keys not configured')
            raise ConfigurationError('VAPID keys not configured', error='missing_vapid_keys')
        return private_key, {'sub': current_app.config['VAPID_CLAIM_EMAIL']}

    @staticmethod
    def notify_user(user_id: int, title: str, body: str,
                    data: Optional[Dict[str, Any]] = None) -> DispatchResult:
        """
        Deliver one message to every push subscription of a user

        Sends run concurrently and are all joined before returning. A failure
        on one endpoint never affects the others. Endpoints answering 404/410
        are deleted; every other failure is logged and the endpoint kept.

        Args:
            user_id: Owner of the subscriptions
            title: Notification title
            body: Notification text
            data: Structured context for the client

        Returns:
            DispatchResult with sent, total and removed counts
        """
        private_key, claims = NotificationService._vapid_settings()

        subscriptions = PushSubscription.query.filter_by(user_id=user_id).all()
        if not subscriptions:
            logger.info(f'No push subscriptions for user {user_id}')
            return DispatchResult(0, 0, 0)

        payload = json.dumps(NotificationService.build_payload(title, body, data))
        targets: List[Tuple[int, Dict[str, Any]]] = [
            (sub.id, sub.subscription_info()) for sub in subscriptions
        ]
        timeout = current_app.config['PUSH_TIMEOUT_SECONDS']
        ttl = current_app.config['PUSH_TTL_SECONDS']
        workers = max(1, min(len(targets), current_app.config['PUSH_MAX_WORKERS']))

        delivered: List[int] = []
        gone: List[int] = []

        with ThreadPoolExecutor(max_workers=workers) as pool:
            futures = {
                pool.submit(_deliver, info, payload, private_key, claims, timeout, ttl): sub_id
                for sub_id, info in targets
            }
            for future in as_completed(futures):
                sub_id = futures[future]
                try:
                    future.result()
                    delivered.append(sub_id)
                except DeliveryFailure as e:
                    logger.warning(f'Push send failed for subscription {sub_id} (status={e.status}): {e.message}')
                    if e.is_gone:
                        gone.append(sub_id)
                except Exception as e:
                    logger.exception(f'Unexpected push error for subscription {sub_id}: {e}')

        if delivered:
            PushSubscription.query.filter(PushSubscription.id.in_(delivered)).update(
                {'last_seen': utcnow()}, synchronize_session=False
            )
        if gone:
            PushSubscription.query.filter(PushSubscription.id.in_(gone)).delete(
                synchronize_session=False
            )
            for sub_id in gone:
                logger.info(f'Removed invalid subscription: {sub_id}')
        db.session.commit()

        result = DispatchResult(len(delivered), len(targets), len(gone))
        logger.info(f'Push notifications sent: {result.sent}/{result.total} for user {user_id}')
        return result

    @staticmethod
    def build_alarm_message(device: Device, compartment: Compartment, scheduled_at: datetime,
                            local_time: datetime,
                            title: Optional[str] = None) -> Tuple[str, str, Dict[str, Any]]:
        """Title, body and data block of a dose alarm"""
        body = f'{compartment.title} - {local_time.strftime("%H:%M")} (compartment {compartment.idx})'
        data = {
            'route': DEFAULT_ROUTE,
            'deviceId': device.id,
            'compartmentId': compartment.id,
            'scheduledAt': scheduled_at.isoformat(),
            'action': 'open_app',
        }
        return title or ALARM_TITLE, body, data

    @staticmethod
    def build_alarm_payload(device: Device, compartment: Compartment, scheduled_at: datetime,
                            local_time: datetime, title: Optional[str] = None) -> Dict[str, Any]:
        """Exact wire JSON pushed for a dose alarm"""
        return NotificationService.build_payload(
            *NotificationService.build_alarm_message(device, compartment, scheduled_at, local_time, title)
        )

    @staticmethod
    def send_dose_alarm(device: Device, compartment: Compartment, scheduled_at: datetime,
                        local_time: datetime, title: Optional[str] = None) -> DispatchResult:
        """
        Alert the owner of a device that a dose is due

        Args:
            device: Alarming device
            compartment: Compartment holding the dose
            scheduled_at: Aware UTC occurrence time
            local_time: Same instant on the device's wall clock
            title: Optional title override

        Returns:
            DispatchResult of the fan-out
        """
        alarm_title, body, data = NotificationService.build_alarm_message(
            device, compartment, scheduled_at, local_time, title
        )
        return NotificationService.notify_user(device.user_id, alarm_title, body, data)
