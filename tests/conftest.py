from __future__ import annotations

import pytest
from fakes import FakeAdapter


@pytest.fixture
def adapter() -> FakeAdapter:
    return FakeAdapter(
        {
            "campaigns": [
                {"id": 1, "name": "Spring launch", "status": "active"},
                {"id": 2, "name": "Summer promo", "status": "draft"},
            ],
            "tasks": [],
        }
    )
