import logging

import requests

from ..errors import Result

log = logging.getLogger(__name__)


def reward_event(scan):
    return {
        'productCode': scan['product_code'],
        'scanTimestamp': scan['scan_timestamp'],
        'identity': scan['identity'],
    }


class RewardClient:
    """Hands accepted scans to the reward-granting service."""

    def __init__(self, base_url=None, api_key=None, timeout=2.5):
        self.base_url = base_url.rstrip('/') if base_url else None
        self.api_key = api_key
        self.timeout = timeout

    def grant(self, scan):
        event = reward_event(scan)
        if not self.base_url:
            log.info('reward service not configured; acknowledging %s for %s locally',
                     event['productCode'], event['identity'])
            return Result.ok(event, 'Reward recorded locally')
        headers = {'Content-Type': 'application/json', 'Accept': 'application/json'}
        if self.api_key:
            headers['Authorization'] = f'Bearer {self.api_key}'
        try:
            r = requests.post(f'{self.base_url}/rewards/grant', json=event, headers=headers, timeout=self.timeout)
        except requests.RequestException as exc:
            log.warning('reward service unreachable: %s', exc)
            return Result.fail('RewardUnavailable', 'Reward service unavailable, please retry', retryable=True)
        if r.status_code >= 400:
            log.warning('reward grant failed %s: %s', r.status_code, r.text[:200])
            return Result.fail('RewardUnavailable', 'Reward could not be granted, please retry',
                               retryable=r.status_code >= 500)
        return Result.ok(event, 'Reward granted')
