from __future__ import annotations

import sys
import unittest
from pathlib import Path

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

APP_DIR = Path(__file__).resolve().parents[1] / "app"
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

from database import Base, Settings, upsert_settings  # noqa: E402
from settings import ensure_default_settings, load_active_settings, pto_type_values  # noqa: E402
from settings_defaults import DEFAULT_LEAVE_HOURS  # noqa: E402


class SettingsTests(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = create_engine("sqlite:///:memory:", future=True)
        Base.metadata.create_all(self.engine)
        self.session_factory = sessionmaker(bind=self.engine, expire_on_commit=False, future=True)
        self.session = self.session_factory()

    def tearDown(self) -> None:
        self.session.close()
        self.engine.dispose()

    def test_defaults_without_a_row(self) -> None:
        settings = load_active_settings(self.session)

        self.assertEqual(settings["default_leave_hours"], DEFAULT_LEAVE_HOURS)
        self.assertTrue(settings["pto_balances_enabled"])
        self.assertFalse(settings["allow_ppo_pairs"])
        self.assertEqual(pto_type_values(settings), ["vacation", "sick", "comp", "holiday"])

    def test_ensure_default_settings_seeds_once(self) -> None:
        ensure_default_settings(self.session_factory)
        ensure_default_settings(self.session_factory)

        rows = self.session.query(Settings).all()
        self.assertEqual(len(rows), 1)
        self.assertEqual(rows[0].name, "Department Defaults")

    def test_saved_values_are_normalized(self) -> None:
        upsert_settings(
            self.session,
            "Custom",
            {"default_leave_hours": "40", "allow_ppo_pairs": 1, "pto_types": ["Vacation", {"value": "Jury"}]},
            edited_by="tests",
        )

        settings = load_active_settings(self.session_factory)

        self.assertEqual(settings["default_leave_hours"], DEFAULT_LEAVE_HOURS)
        self.assertIs(settings["allow_ppo_pairs"], True)
        self.assertEqual(pto_type_values(settings), ["vacation", "jury"])

    def test_corrupt_payload_falls_back_to_defaults(self) -> None:
        self.session.add(Settings(name="Broken", paramsJSON="{not json", lastEditedBy="tests"))
        self.session.commit()

        settings = load_active_settings(self.session)

        self.assertEqual(settings["default_leave_hours"], DEFAULT_LEAVE_HOURS)


if __name__ == "__main__":
    unittest.main()
