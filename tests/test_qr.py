import base64
import json

import qr


def test_payload_is_compact_json():
    data = qr.dump_payload({"code": "FOOD-ABC123", "amount": 100})
    assert data == '{"code":"FOOD-ABC123","amount":100}'
    assert json.loads(data)["code"] == "FOOD-ABC123"


def test_encode_returns_png_data_url():
    url = qr.encode(qr.dump_payload({"code": "FOOD-ABC123"}))
    prefix = "data:image/png;base64,"
    assert url.startswith(prefix)
    assert base64.b64decode(url[len(prefix):]).startswith(b"\x89PNG")
