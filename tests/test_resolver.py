"""Tests for reference resolution."""

import pytest

from converge.config import UNKNOWN, ResourceRef, VariableRef
from converge.config.expressions import parse_string
from converge.orchestrator import Resolver
from converge.orchestrator.resolver import walk_path
from converge.utils.errors import ReferenceResolutionError
from converge.utils.sensitive import DIGEST_KEY, Sensitive


def _ref(text):
    return parse_string("${%s}" % text)


class TestWalkPath:
    def test_nested_mappings_and_lists(self):
        value = {"tags": {"Name": "web"}, "subnets": ["a", "b"]}
        assert walk_path(value, ["tags", "Name"]) == "web"
        assert walk_path(value, ["subnets", "1"]) == "b"

    def test_sensitive_stays_wrapped(self):
        result = walk_path({"creds": Sensitive({"password": "hunter22"})}, ["creds", "password"])
        assert isinstance(result, Sensitive)
        assert result.value == "hunter22"


class TestResolver:
    def test_declared_value_wins(self):
        resolver = Resolver()
        resolver.set_desired("aws_s3_bucket.a", {"bucket": "declared"})
        resolver.set_observed("aws_s3_bucket.a", {"bucket": "observed", "arn": "arn:aws:s3:::a"})

        assert resolver.lookup(_ref("aws_s3_bucket.a.bucket")) == "declared"
        assert resolver.lookup(_ref("aws_s3_bucket.a.arn")) == "arn:aws:s3:::a"

    def test_unknown_while_planning(self):
        resolver = Resolver()
        resolver.set_desired("aws_s3_bucket.a", {"bucket": "a"})
        assert resolver.lookup(_ref("aws_s3_bucket.a.arn")) is UNKNOWN
        assert resolver.resolve(parse_string("${aws_s3_bucket.a.arn}/*")) is UNKNOWN

    def test_strict_mode_raises(self):
        resolver = Resolver(strict=True)
        with pytest.raises(ReferenceResolutionError) as exc_info:
            resolver.lookup(_ref("aws_s3_bucket.a.arn"), referrer="aws_iam_role.b")
        assert exc_info.value.context.resource_id == "aws_iam_role.b"

    def test_strict_mode_skips_unknown_declared_values(self):
        resolver = Resolver(strict=True)
        resolver.set_desired("aws_iam_role.b", {"bucket_arn": UNKNOWN})
        resolver.set_observed("aws_iam_role.b", {"bucket_arn": "arn:aws:s3:::a"})
        assert resolver.lookup(_ref("aws_iam_role.b.bucket_arn")) == "arn:aws:s3:::a"

    def test_strict_mode_rejects_digests(self):
        resolver = Resolver(strict=True)
        resolver.set_observed("aws_codepipeline.app", {"token": {DIGEST_KEY: "sha256:abc"}})
        with pytest.raises(ReferenceResolutionError):
            resolver.lookup(_ref("aws_codepipeline.app.token"))

    def test_forgetting_observed_state(self):
        resolver = Resolver()
        resolver.set_observed("aws_s3_bucket.a", {"arn": "x"})
        resolver.set_observed("aws_s3_bucket.a", None)
        assert resolver.observed("aws_s3_bucket.a") is None

    def test_unbound_variable_is_an_error(self):
        with pytest.raises(ReferenceResolutionError):
            Resolver().resolve({"name": VariableRef("env")})

    def test_resolve_nested_structure(self):
        resolver = Resolver()
        resolver.set_observed("aws_s3_bucket.a", {"arn": "arn:aws:s3:::a"})
        value = {"Statement": [{"Resource": ResourceRef("aws_s3_bucket.a", ("arn",))}]}
        assert resolver.resolve(value) == {"Statement": [{"Resource": "arn:aws:s3:::a"}]}
