#!/usr/bin/env python3
import sys, json, time, redis

# Usage: python scripts/check_redis.py <REDIS_URL> <IDENTITY> [ACTION]
# Shows the sliding-window entries the rate limiter holds for an identity

if len(sys.argv) < 3:
    print("Usage: check_redis.py <REDIS_URL> <IDENTITY> [ACTION]")
    sys.exit(1)

url = sys.argv[1].strip()
identity = sys.argv[2].strip()
action = sys.argv[3].strip() if len(sys.argv) > 3 else 'scan'

r = redis.from_url(url, decode_responses=True)
key = f"rl:{action}:{identity}"
now = time.time()
entries = r.zrange(key, 0, -1, withscores=True)

print(json.dumps({
    'redis': url,
    'key': key,
    'entries': len(entries),
    'ages': [round(now - score, 1) for _, score in entries],
    'ttl': r.ttl(key),
}, indent=2))
