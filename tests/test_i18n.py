"""Tests for overlay localization."""

from axreplay.i18n import load_script, localize, message


class TestMessages:
    def test_unknown_language_falls_back_to_english(self):
        assert message("STOP_RECORDING", "fr-FR") == "Stop recording"

    def test_chinese(self):
        assert message("STOP_RECORDING", "zh-CN") == "停止录制"

    def test_unknown_key_is_returned_verbatim(self):
        assert message("NOT_A_KEY") == "NOT_A_KEY"

    def test_localize_escapes_for_js_strings(self, monkeypatch):
        """Substituted text cannot break out of a quoted JS string."""
        from axreplay import i18n

        monkeypatch.setitem(i18n.MESSAGES["en-US"], "CLICK_PREFIX", "it's")
        assert localize("'{{CLICK_PREFIX}}'") == "'it\\'s'"


class TestScripts:
    def test_all_placeholders_filled(self):
        for name in ("recorder.js", "iframe_recorder.js", "iframe_listener.js"):
            script = load_script(name, "zh-CN")
            assert "{{" not in script, name

    def test_recorder_script_localized(self):
        assert "录制中" in load_script("recorder.js", "zh-CN")
        assert "Recording" in load_script("recorder.js", "en-US")
