# Sign a webhook body the way Shopify / Naver do, for manual curl testing.
#   python generate_signature.py shopify <secret> body.json
#   python generate_signature.py naver <secret> body.json
import sys, time

from app.webhooks.signature import b64_hmac_sha256

if len(sys.argv) != 4 or sys.argv[1] not in ("shopify", "naver"):
    sys.exit("usage: generate_signature.py shopify|naver <secret> <body-file>")

source, secret, path = sys.argv[1:]
with open(path, "rb") as f:
    body = f.read()

if source == "shopify":
    print(f"X-Shopify-Hmac-Sha256: {b64_hmac_sha256(secret, body)}")
else:
    ts = str(int(time.time() * 1000))
    print(f"X-Naver-Timestamp: {ts}")
    print(f"X-Naver-Signature: {b64_hmac_sha256(secret, ts.encode('utf-8') + b'.' + body)}")
