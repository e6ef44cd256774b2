"""Tests for template rendering, escaping and template validation."""

import pytest

from pystatewise.errors import InvalidConfiguration
from pystatewise.models import Channel
from pystatewise.render import (
    available_variables,
    escape_for,
    preview_template,
    render,
    template_variables,
    validate_template,
)


def test_render_substitutes_variables():
    assert render("Olá {{client_name}}!", {"client_name": "Ana"}) == "Olá Ana!"


def test_render_allows_inner_whitespace():
    assert render("{{ client_name }}/{{client_name  }}", {"client_name": "Ana"}) == "Ana/Ana"


def test_render_undefined_variable_is_empty():
    """Unknown variables never block delivery of the message."""
    assert render("Hello {{nope}}!", {}) == "Hello !"


def test_render_none_value_is_empty():
    assert render("[{{notes}}]", {"notes": None}) == "[]"


def test_render_does_not_re_expand_values():
    data = {"a": "{{b}}", "b": "secret"}
    assert render("{{a}}", data) == "{{b}}"


def test_render_leaves_non_placeholders_alone():
    text = "{{ not a var }} {single} {{a.b}} {{a|upper}}"
    assert render(text, {"a": "x"}) == text


def test_render_converts_values_with_str():
    assert render("{{n}}", {"n": 42}) == "42"


def test_email_body_escapes_html_in_values_only():
    escape = escape_for(Channel.EMAIL, "body")
    out = render("<p>{{name}}</p>", {"name": "<script>x</script>"}, escape)
    assert out == "<p>&lt;script&gt;x&lt;/script&gt;</p>"


def test_email_subject_strips_header_injection():
    escape = escape_for(Channel.EMAIL, "subject")
    out = render("Budget {{n}}", {"n": "1\r\nBcc: evil@example.com"}, escape)
    assert "\r" not in out and "\n" not in out
    assert out == "Budget 1Bcc: evil@example.com"


def test_whatsapp_keeps_newlines_but_drops_other_control_chars():
    escape = escape_for(Channel.WHATSAPP)
    out = render("{{v}}", {"v": "line1\nline2\x00\x1b"}, escape)
    assert out == "line1\nline2"


def test_template_variables_in_order_without_duplicates():
    assert template_variables("{{b}} {{a}} {{ b }} {{c}}") == ["b", "a", "c"]


def test_available_variables_for_session():
    names = available_variables("session")
    for expected in ("patient_name", "therapist_name", "session_date", "session_time", "status"):
        assert expected in names
    assert "organization_id" not in names
    assert "current_state" not in names


def test_validate_template_reports_unknown_variables():
    unknown = validate_template("{{client_name}} {{bogus}} {{bogus}} {{other}}", "budget")
    assert unknown == ["bogus", "other"]


def test_validate_template_accepts_known_variables():
    assert validate_template("Orçamento {{budget_number}}: {{budget_total}}", "budget") == []


def test_validate_template_unknown_entity_type():
    with pytest.raises(InvalidConfiguration):
        validate_template("{{x}}", "invoice")


def test_preview_template_uses_sample_data():
    subject, body = preview_template(
        "Olá {{patient_name}}, sessão em {{session_date}}", "session", subject="Lembrete"
    )
    assert subject == "Lembrete"
    assert body == "Olá João Silva, sessão em 15/01/2025"


def test_preview_template_without_subject():
    subject, body = preview_template("{{budget_total}}", "budget")
    assert subject == ""
    assert body == "15000.00"
