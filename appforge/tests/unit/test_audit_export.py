from __future__ import annotations

from appforge.services.audit import sanitize_details
from appforge.services.export import CSV_HEADER, render_csv


def test_sensitive_detail_keys_are_redacted_recursively() -> None:
    details = {
        "from": "user",
        "Authorization": "Bearer abc",
        "nested": {"reset_token": "raw", "keep": 1},
        "items": [{"password": "pw"}, {"note": "ok"}],
    }

    sanitized = sanitize_details(details)

    assert sanitized == {
        "from": "user",
        "Authorization": "[REDACTED]",
        "nested": {"reset_token": "[REDACTED]", "keep": 1},
        "items": [{"password": "[REDACTED]"}, {"note": "ok"}],
    }


def test_csv_export_flattens_one_row_per_field() -> None:
    exported = {
        "app_id": "app-1",
        "collections": {
            "tasks": {
                "schema": [],
                "items": [
                    {
                        "id": "i1",
                        "data": {"title": 'Say "hi", world', "done": True, "tags": ["a"]},
                        "created_at": "2026-01-02T03:04:05+00:00",
                    }
                ],
            },
            "empty": {"schema": [], "items": []},
        },
        "users": [],
    }

    lines = render_csv(exported).split("\r\n")

    assert lines[0] == ",".join(CSV_HEADER)
    assert lines[1] == 'tasks,title,"Say ""hi"", world",2026-01-02T03:04:05+00:00'
    assert lines[2] == "tasks,done,true,2026-01-02T03:04:05+00:00"
    assert lines[3] == 'tasks,tags,"[""a""]",2026-01-02T03:04:05+00:00'
    assert lines[4] == ""
