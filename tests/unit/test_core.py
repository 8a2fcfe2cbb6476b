"""Unit tests for the core layer: capabilities, settings, stage config, answers, models.

Tests cover:
- ``is_admin`` / ``has_active_membership`` / ``Capabilities`` derivation.
- ``resolve_service_auth`` / ``require_service_auth`` for the automation secret.
- ``Settings`` defaults and validators (with ``.env`` loading disabled).
- ``resolve_stage_config`` precedence, ``clamp_limit`` and ``compute_cost``.
- ``apply_request_settings`` and ``render_template``.
- Answer validation for every stage plus ``parse_completion`` failures.
- Exception hierarchy status codes.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest
from fakes import (
    business_payload,
    completion,
    financials_payload,
    focus_payload,
    risks_payload,
    stage1_payload,
    stage2_payload,
    summary_payload,
)
from pydantic import ValidationError

from researchflow.core.answers import (
    BusinessAnswer,
    FinancialsAnswer,
    FocusAnswer,
    RisksAnswer,
    Stage1Answer,
    Stage2Answer,
    Stage3Summary,
    parse_completion,
)
from researchflow.core.auth import (
    SERVICE_SECRET_HEADER,
    SERVICE_SECRET_QUERY,
    Capabilities,
    has_active_membership,
    is_admin,
    require_service_auth,
    resolve_service_auth,
)
from researchflow.core.exceptions import (
    AnswerValidationError,
    AuthError,
    ConfigError,
    ForbiddenError,
    NotFoundError,
    ProviderRequestError,
    ResearchflowError,
    RunNotFoundError,
    StageInvocationError,
    StorageError,
)
from researchflow.core.models import Run, RunItem, RunStatus, StageName
from researchflow.core.settings import Settings
from researchflow.core.stage_config import (
    MODEL_REGISTRY,
    STAGE_DEFAULTS,
    RequestSettings,
    RetrySettings,
    StageDefaults,
    apply_request_settings,
    clamp_int,
    compute_cost,
    render_template,
    resolve_model,
    resolve_stage_config,
    usage_tokens,
)

# ---------------------------------------------------------------------------
# Capabilities
# ---------------------------------------------------------------------------


class TestIsAdmin:
    def test_explicit_flag_on_profile(self) -> None:
        assert is_admin({"profile": {"is_admin": True}}) is True

    def test_flag_must_be_boolean_true(self) -> None:
        assert is_admin({"profile": {"is_admin": "yes"}}) is False

    def test_role_string_split_on_commas(self) -> None:
        assert is_admin({"profile": {"role": "viewer, editor"}}) is True

    def test_nested_user_metadata_roles(self) -> None:
        user = {"app_metadata": {"roles": ["member", "Owner"]}}
        assert is_admin({"user": user}) is True

    def test_membership_role(self) -> None:
        assert is_admin({"membership": {"role": "admin"}}) is True

    def test_unprivileged_roles(self) -> None:
        context = {"profile": {"role": "viewer"}, "membership": {"roles": ["member"]}}
        assert is_admin(context) is False

    def test_empty_context(self) -> None:
        assert is_admin({}) is False


class TestMembership:
    NOW = datetime(2026, 3, 1, tzinfo=UTC)

    @pytest.mark.parametrize("status", ["active", "Trialing", " complimentary "])
    def test_active_statuses(self, status: str) -> None:
        assert has_active_membership({"membership": {"status": status}}, self.NOW) is True

    def test_future_expiry_counts_as_active(self) -> None:
        expiry = (self.NOW + timedelta(days=3)).isoformat().replace("+00:00", "Z")
        context = {"membership": {"status": "cancelled", "expiresAt": expiry}}
        assert has_active_membership(context, self.NOW) is True

    def test_past_expiry_is_inactive(self) -> None:
        context = {"membership": {"status": "cancelled", "expires_at": "2026-02-01T00:00:00"}}
        assert has_active_membership(context, self.NOW) is False

    def test_unparseable_expiry_is_ignored(self) -> None:
        context = {"membership": {"expires_on": "next tuesday"}}
        assert has_active_membership(context, self.NOW) is False

    def test_missing_membership(self) -> None:
        assert has_active_membership({}, self.NOW) is False


class TestCapabilities:
    def test_admin_can_spend(self) -> None:
        caps = Capabilities.from_context({"profile": {"role": "admin"}})
        assert caps.is_admin and caps.can_spend

    def test_member_can_spend_but_not_administer(self) -> None:
        caps = Capabilities.from_context({"membership": {"status": "active"}})
        assert caps.can_spend is True
        with pytest.raises(ForbiddenError, match="Admin access required"):
            caps.require_admin()

    def test_require_spend(self) -> None:
        with pytest.raises(ForbiddenError, match="Active membership required"):
            Capabilities(is_admin=True, can_spend=False).require_spend()

    def test_service_capabilities(self) -> None:
        caps = Capabilities.service()
        caps.require_admin()
        caps.require_spend()


class TestServiceAuth:
    def test_header_match_case_insensitive(self) -> None:
        result = resolve_service_auth({"X-Automation-Secret": " s3cret "}, None, "s3cret")
        assert result.authorized is True
        assert result.reason is None

    def test_query_fallback(self) -> None:
        result = resolve_service_auth(None, {SERVICE_SECRET_QUERY: "s3cret"}, "s3cret")
        assert result.authorized is True

    def test_header_wins_over_query(self) -> None:
        result = resolve_service_auth(
            {SERVICE_SECRET_HEADER: "wrong"}, {SERVICE_SECRET_QUERY: "s3cret"}, "s3cret"
        )
        assert result.authorized is False
        assert result.reason == "Invalid automation secret"

    def test_missing_secret(self) -> None:
        result = resolve_service_auth({}, {}, "s3cret")
        assert result.reason == "Missing automation secret"

    def test_not_configured(self) -> None:
        result = resolve_service_auth({SERVICE_SECRET_HEADER: "x"}, None, "  ")
        assert result.reason == "Service secret not configured"

    def test_require_raises_config_error_when_unconfigured(self) -> None:
        with pytest.raises(ConfigError) as excinfo:
            require_service_auth({SERVICE_SECRET_HEADER: "x"}, None, "")
        assert excinfo.value.status_code == 500

    def test_require_raises_auth_error_on_mismatch(self) -> None:
        with pytest.raises(AuthError) as excinfo:
            require_service_auth({SERVICE_SECRET_HEADER: "x"}, None, "y")
        assert excinfo.value.status_code == 401

    def test_require_returns_service_capabilities(self) -> None:
        caps = require_service_auth({SERVICE_SECRET_HEADER: "y"}, None, "y")
        assert caps == Capabilities.service()


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


class TestSettings:
    def test_defaults(self, clean_env: None) -> None:
        s = Settings()
        assert s.database_path == "data/researchflow.db"
        assert s.claim_timeout_seconds == 900
        assert s.log_level == "INFO"
        assert s.automation_configured is False

    def test_env_overrides(self, clean_env: None, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("AUTOMATION_SERVICE_SECRET", "  abc  ")
        monkeypatch.setenv("LOG_LEVEL", "debug")
        monkeypatch.setenv("OPENAI_BASE_URL", "https://proxy.local/v1/")
        s = Settings()
        assert s.automation_service_secret == "abc"
        assert s.automation_configured is True
        assert s.log_level == "DEBUG"
        assert s.openai_base_url == "https://proxy.local/v1"

    def test_invalid_log_format_rejected(
        self, clean_env: None, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("LOG_FORMAT", "xml")
        with pytest.raises(ValidationError):
            Settings()

    def test_claim_timeout_lower_bound(
        self, clean_env: None, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("CLAIM_TIMEOUT_SECONDS", "5")
        with pytest.raises(ValidationError):
            Settings()

    def test_openrouter_key_falls_back_to_openai(self, clean_env: None) -> None:
        s = Settings(openai_api_key="sk-openai")
        assert s.api_key_for("openrouter") == "sk-openai"
        assert s.api_key_for("openai") == "sk-openai"
        assert s.api_key_for("anthropic") == ""


# ---------------------------------------------------------------------------
# Stage config
# ---------------------------------------------------------------------------


class TestStageConfig:
    def test_defaults_per_stage(self) -> None:
        assert resolve_stage_config(StageName.STAGE1).model.slug == "4o-mini"
        assert resolve_stage_config(StageName.STAGE2).model.slug == "5-mini"
        assert resolve_stage_config(StageName.STAGE3).model.slug == "5"
        assert resolve_stage_config(StageName.FOCUS).model.slug == "5"

    def test_planner_override_wins(self) -> None:
        config = resolve_stage_config(StageName.STAGE2, {"stage2": {"model": "5"}})
        assert config.model.slug == "5"

    def test_unknown_override_falls_through(self) -> None:
        config = resolve_stage_config(StageName.STAGE1, {"stage1": {"model": "gpt-99"}})
        assert config.model.slug == "4o-mini"

    def test_fallback_model_used_when_default_unknown(self) -> None:
        table = {
            StageName.FOCUS: StageDefaults(
                stage=StageName.FOCUS,
                default_model="missing",
                fallback_model="5-mini",
                default_limit=3,
                max_limit=10,
            )
        }
        config = resolve_stage_config(StageName.FOCUS, defaults=table)
        assert config.model.slug == "5-mini"

    def test_nothing_resolves_raises_config_error(self) -> None:
        table = {
            StageName.STAGE1: StageDefaults(
                stage=StageName.STAGE1,
                default_model="nope",
                fallback_model="also-nope",
                default_limit=1,
                max_limit=1,
            )
        }
        with pytest.raises(ConfigError, match="Model configuration missing"):
            resolve_stage_config(StageName.STAGE1, defaults=table)

    def test_resolve_model_by_name_and_openrouter_prefix(self) -> None:
        assert resolve_model("gpt-5-mini") is MODEL_REGISTRY["5-mini"]
        routed = resolve_model("openrouter/gpt-4o-mini")
        assert routed is not None and routed.provider == "openrouter"
        assert resolve_model("") is None

    @pytest.mark.parametrize(
        ("requested", "expected"),
        [(None, 8), ("abc", 8), (0, 1), (-4, 1), (3, 3), (3.9, 3), (500, 25), ("12", 12)],
    )
    def test_clamp_limit(self, requested: object, expected: int) -> None:
        assert resolve_stage_config(StageName.STAGE1).clamp_limit(requested) == expected

    def test_clamp_int_ignores_booleans(self) -> None:
        assert clamp_int(True, 4, 1, 10) == 4

    def test_explicit_retry_overrides_default(self) -> None:
        retry = RetrySettings(attempts=5, backoff_ms=0, jitter=0)
        config = resolve_stage_config(StageName.STAGE3, retry=retry)
        assert config.retry.attempts == 5
        assert STAGE_DEFAULTS[StageName.STAGE3].retry.attempts == 3

    def test_retry_from_mapping_clamps(self) -> None:
        retry = RetrySettings.from_mapping({"attempts": 0, "backoffMs": -5, "jitter": "x"})
        assert retry.attempts == 1
        assert retry.backoff_ms == 0.0
        assert retry.jitter == 0.25


class TestCost:
    def test_compute_cost_uses_per_million_prices(self) -> None:
        tokens_in, tokens_out, cost = compute_cost(
            MODEL_REGISTRY["5-mini"], {"prompt_tokens": 2_000_000, "completion_tokens": 500_000}
        )
        assert (tokens_in, tokens_out) == (2_000_000, 500_000)
        assert cost == pytest.approx(0.5 + 1.0)

    def test_usage_accepts_responses_style_keys(self) -> None:
        assert usage_tokens({"input_tokens": 10, "output_tokens": 4}) == (10, 4)

    def test_missing_usage_is_free(self) -> None:
        assert compute_cost(MODEL_REGISTRY["5"], None) == (0, 0, 0.0)


class TestRequestSettings:
    def test_apply_copies_fields(self) -> None:
        settings = RequestSettings(
            temperature=0.3,
            max_tokens=900,
            stop_sequences=("END", ""),
            metadata={"team": "research"},
            cache={"ttl": 60},
        )
        body = {"messages": [], "metadata": {"run": "r1"}}
        result = apply_request_settings(body, settings)
        assert result["temperature"] == 0.3
        assert result["max_tokens"] == 900
        assert result["stop"] == ["END"]
        assert result["metadata"] == {"run": "r1", "team": "research"}
        assert result["extra_body"] == {"cache": {"ttl": 60}}
        assert "metadata" in body and body["metadata"] == {"run": "r1"}

    def test_none_settings_returns_copy(self) -> None:
        body = {"messages": []}
        result = apply_request_settings(body, None)
        assert result == body and result is not body


class TestRenderTemplate:
    def test_tokens_replaced(self) -> None:
        text = render_template("Q: {{ question }} / {{ticker}}", {"question": "Why?", "ticker": "X"})
        assert text == "Q: Why? / X"

    def test_missing_tokens_render_empty(self) -> None:
        assert render_template("[{{ nope }}]", {}) == "[]"

    def test_list_values_concatenated(self) -> None:
        assert render_template("{{ parts }}", {"parts": ["a", "b"]}) == "ab"


# ---------------------------------------------------------------------------
# Answers
# ---------------------------------------------------------------------------


class TestStage1Answer:
    def test_valid_payload(self) -> None:
        answer = Stage1Answer.validate_payload(stage1_payload("Borderline"))
        assert answer.label == "borderline"
        assert answer.summary_line() == "Consistent free cash flow"

    def test_unknown_label_rejected(self) -> None:
        with pytest.raises(AnswerValidationError) as excinfo:
            Stage1Answer.validate_payload(stage1_payload("maybe"))
        assert excinfo.value.stage == "stage1"
        assert any(err.startswith("label") for err in excinfo.value.errors)

    def test_reasons_bounds(self) -> None:
        payload = stage1_payload()
        payload["reasons"] = []
        with pytest.raises(AnswerValidationError):
            Stage1Answer.validate_payload(payload)
        payload["reasons"] = ["x" * 241]
        with pytest.raises(AnswerValidationError):
            Stage1Answer.validate_payload(payload)

    def test_missing_flags_rejected(self) -> None:
        payload = stage1_payload()
        del payload["flags"]["dilution"]
        with pytest.raises(AnswerValidationError):
            Stage1Answer.validate_payload(payload)

    def test_non_object_rejected(self) -> None:
        with pytest.raises(AnswerValidationError, match="JSON object"):
            Stage1Answer.validate_payload(["consider"])

    def test_extra_keys_kept(self) -> None:
        payload = {**stage1_payload(), "confidence": "high"}
        answer = Stage1Answer.validate_payload(payload)
        assert answer.model_dump()["confidence"] == "high"


class TestStage2Answer:
    def test_go_deep(self) -> None:
        assert Stage2Answer.validate_payload(stage2_payload(True)).go_deep is True
        assert Stage2Answer.validate_payload(stage2_payload(False)).go_deep is False

    def test_go_deep_must_be_boolean(self) -> None:
        with pytest.raises(AnswerValidationError):
            Stage2Answer.validate_payload(stage2_payload("true"))

    def test_score_out_of_range(self) -> None:
        payload = stage2_payload()
        payload["scores"]["moat"]["score"] = 11
        with pytest.raises(AnswerValidationError, match="moat"):
            Stage2Answer.validate_payload(payload)

    def test_blank_rationale_rejected(self) -> None:
        payload = stage2_payload()
        payload["scores"]["timing"]["rationale"] = "   "
        with pytest.raises(AnswerValidationError):
            Stage2Answer.validate_payload(payload)

    def test_summary_line_falls_back_to_next_steps(self) -> None:
        payload = stage2_payload()
        payload["verdict"]["summary"] = ""
        answer = Stage2Answer.validate_payload(payload)
        assert answer.summary_line() == "Review segment disclosures"


class TestStage3Answers:
    def test_group_payloads_validate(self) -> None:
        assert BusinessAnswer.validate_payload(business_payload()).moat.score == 8
        assert FinancialsAnswer.validate_payload(financials_payload()).balance_sheet.score == 8
        assert RisksAnswer.validate_payload(risks_payload()).timing_window == "3-6 months"

    def test_risks_require_at_least_one(self) -> None:
        payload = risks_payload()
        payload["principal_risks"] = []
        with pytest.raises(AnswerValidationError) as excinfo:
            RisksAnswer.validate_payload(payload)
        assert excinfo.value.stage == "stage3.risks"

    def test_summary_confidence_bounds(self) -> None:
        payload = summary_payload()
        payload["confidence"] = 101
        with pytest.raises(AnswerValidationError):
            Stage3Summary.validate_payload(payload)


class TestFocusAnswer:
    def test_all_fields_optional(self) -> None:
        answer = FocusAnswer.validate_payload({"notes": "free form"})
        assert answer.summary is None
        assert answer.summary_line() == "—"

    def test_full_payload(self) -> None:
        answer = FocusAnswer.validate_payload(focus_payload())
        assert answer.summary_line() == "Pricing power is intact."


class TestParseCompletion:
    def test_decodes_json_content(self) -> None:
        assert parse_completion("stage1", completion({"a": 1})) == {"a": 1}

    def test_invalid_json_keeps_raw_content(self) -> None:
        with pytest.raises(AnswerValidationError) as excinfo:
            parse_completion("stage1", completion("not json"))
        assert excinfo.value.raw == "not json"

    def test_non_object_json(self) -> None:
        with pytest.raises(AnswerValidationError, match="JSON object"):
            parse_completion("stage2", completion("[1, 2]"))

    def test_missing_content(self) -> None:
        with pytest.raises(AnswerValidationError, match="missing content"):
            parse_completion("stage1", {"choices": [{"message": {"content": ""}}]})
        with pytest.raises(AnswerValidationError):
            parse_completion("stage1", {"choices": []})


# ---------------------------------------------------------------------------
# Models / exceptions
# ---------------------------------------------------------------------------


class TestModels:
    def test_run_notes_decoded_from_json_text(self) -> None:
        run = Run(id="r", status=RunStatus.RUNNING, notes='{"planner": {"universe": 10}}')
        assert run.planner == {"universe": 10}

    def test_run_budget_configured(self) -> None:
        assert Run(id="r", status="running", budget_usd=0).budget_configured is False
        assert Run(id="r", status="running", budget_usd=2.5).budget_configured is True

    def test_invalid_notes_become_empty(self) -> None:
        assert Run(id="r", status="queued", notes="{broken").notes == {}

    def test_survivor_labels(self) -> None:
        assert RunItem(run_id="r", ticker="A", label=" Consider ").is_survivor is True
        assert RunItem(run_id="r", ticker="A", label="uninvestible").is_survivor is False

    def test_stage_numbers(self) -> None:
        assert [s.number for s in StageName] == [1, 2, 3, 4]


class TestExceptions:
    @pytest.mark.parametrize(
        ("exc", "status"),
        [
            (ConfigError("x"), 500),
            (AuthError("x"), 401),
            (ForbiddenError("x"), 403),
            (NotFoundError("x"), 404),
            (RunNotFoundError("abc"), 404),
            (StorageError("x"), 500),
            (ProviderRequestError("openai", "x", status_code=503, retryable=True), 502),
            (AnswerValidationError("stage1", ["bad"]), 422),
        ],
    )
    def test_status_codes(self, exc: ResearchflowError, status: int) -> None:
        assert exc.status_code == status
        assert isinstance(exc, ResearchflowError)

    def test_run_not_found_message(self) -> None:
        assert "abc" in str(RunNotFoundError("abc"))
        assert str(RunNotFoundError()) == "Run not found"

    def test_provider_request_error_keeps_upstream_status(self) -> None:
        exc = ProviderRequestError("openrouter", "boom", status_code=429, retryable=True)
        assert exc.upstream_status == 429
        assert exc.retryable is True
        assert str(exc).startswith("[openrouter]")

    def test_stage_invocation_error_carries_progress(self) -> None:
        exc = StageInvocationError(
            "stage2", "upstream down", status_code=503, operations=[{"stage": "stage1"}]
        )
        assert exc.status_code == 503
        assert exc.operations == [{"stage": "stage1"}]
        assert "stage2 failed (503)" in str(exc)
