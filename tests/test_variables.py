"""
Template variable substitution tests
"""
import pytest
from datetime import datetime

from clinic_automation.core.variables import RenderContext, render, build_variables
from clinic_automation.models import Org, Client, Appointment


@pytest.fixture
def ctx() -> RenderContext:
    return RenderContext(
        client=Client(
            id="c1",
            org_id="o1",
            full_name="Jane Marie Doe",
            phones=["+15550100", "+15550199"],
            email="jane@example.com"
        ),
        org=Org(id="o1", name="Glow Aesthetics", phone="(555) 010-2000", timezone="UTC"),
        appointment=Appointment(type="Filler", date_time=datetime(2026, 3, 5, 17, 30))
    )


class TestRender:
    """render() tests"""

    def test_client_tokens(self, ctx):
        text = render("Hi {{first_name}} {{last_name}} ({{client_name}})", ctx)
        assert text == "Hi Jane Marie Doe (Jane Marie Doe)"

    def test_explicit_first_name_wins(self, ctx):
        ctx.client.first_name = "Janie"
        assert render("Hi {{first_name}}", ctx) == "Hi Janie"

    def test_contact_tokens_use_primary_phone(self, ctx):
        assert render("{{phone}} / {{email}}", ctx) == "+15550100 / jane@example.com"

    def test_org_tokens(self, ctx):
        text = render("{{business_name}} {{business_phone}}", ctx)
        assert text == "Glow Aesthetics (555) 010-2000"

    def test_appointment_tokens(self, ctx):
        text = render("{{appointment_type}} on {{appointment_date}} at {{appointment_time}}", ctx)
        assert text == "Filler on 3/5/2026 at 05:30 PM"

    def test_unknown_tokens_are_kept(self, ctx):
        assert render("Use {{promo_code}} today", ctx) == "Use {{promo_code}} today"

    def test_malformed_tokens_are_kept(self, ctx):
        assert render("Hi {{ first_name }} {{first_name", ctx) == "Hi {{ first_name }} {{first_name"

    def test_appointment_tokens_without_appointment(self, ctx):
        ctx.appointment = None
        assert render("See you {{appointment_date}}", ctx) == "See you {{appointment_date}}"

    def test_custom_org_variables(self, ctx):
        ctx.org.custom_variables = {"promo_code": "GLOW20", "discount": 15}
        assert render("{{promo_code}} saves {{discount}}%", ctx) == "GLOW20 saves 15%"

    def test_custom_variables_do_not_shadow_builtins(self, ctx):
        ctx.org.custom_variables = {"first_name": "Someone"}
        assert render("Hi {{first_name}}", ctx) == "Hi Jane"


class TestFallbacks:
    """Rendering never fails on missing data"""

    def test_empty_context(self):
        text = render("Hi {{first_name}}, call {{business_name}} at {{business_phone}}")
        assert text == "Hi there, call our clinic at (555) 123-4567"

    def test_client_without_contact_info(self):
        ctx = RenderContext(client=Client(full_name="", phones=[], email=None))
        assert render("{{client_name}} {{phone}} {{email}}", ctx) == "there your phone your email"

    def test_blank_phone_falls_back(self):
        ctx = RenderContext(client=Client(full_name="Ann", phones=["  "]))
        assert render("{{phone}}", ctx) == "your phone"

    def test_missing_org_links(self):
        variables = build_variables(RenderContext(org=Org(name="Glow")))
        assert variables["booking_link"] == "https://book.example-clinic.com"
        assert variables["google_review_link"] == "https://g.page/r/YourBusinessReviewLink"

    @pytest.mark.parametrize("template, expected", [
        (None, ""),
        ("", ""),
        ("no tokens here", "no tokens here"),
        (42, "42"),
    ])
    def test_totality(self, template, expected):
        assert render(template, RenderContext()) == expected

    def test_unknown_timezone_renders_in_utc(self, ctx):
        ctx.org.timezone = "Not/AZone"
        assert render("{{appointment_time}}", ctx) == "05:30 PM"
