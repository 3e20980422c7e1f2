import os
import sys
import base64
import requests

BASE_URL = os.environ.get('BASE_URL', 'http://localhost:8000')
ADMIN_API_KEY = os.environ.get('ADMIN_API_KEY')

if not ADMIN_API_KEY:
    print('Missing ADMIN_API_KEY in env')
    sys.exit(1)

product_code = sys.argv[1] if len(sys.argv) > 1 else os.environ.get('PRODUCT_CODE', '')
if not product_code:
    print('Usage: issue_token.py <PRODUCT_CODE>')
    sys.exit(1)

payload = {'product_code': product_code}
if os.environ.get('TOKEN_TTL'):
    payload['ttl'] = int(os.environ['TOKEN_TTL'])

headers = {'X-Admin-Key': ADMIN_API_KEY}
out = os.environ.get('OUT', f'token_{product_code}.png')

# If WANT_PNG=1, request image directly
if os.environ.get('WANT_PNG', '0') == '1':
    r = requests.post(f"{BASE_URL}/admin/issue-token", headers={**headers, 'Accept': 'image/png'}, json=payload, timeout=10)
    if r.status_code != 200:
        print('Error:', r.status_code, r.text)
        sys.exit(1)
    with open(out, 'wb') as f:
        f.write(r.content)
    print('PNG saved to', out)
    sys.exit(0)

r = requests.post(f"{BASE_URL}/admin/issue-token", headers=headers, json=payload, timeout=10)
if r.status_code != 200:
    print('Error:', r.status_code, r.text)
    sys.exit(1)
res = r.json()
print('token:', res['token'])
print('expiry:', res['expiry'])
with open(out, 'wb') as f:
    f.write(base64.b64decode(res['qr_png_b64']))
print('PNG saved to', out)
