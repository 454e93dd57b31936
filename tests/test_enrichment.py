"""Tests for member-id enrichment and the in-memory member directory."""

import pytest

from devportal_auth.service.enrichment import MemberEnrichment
from devportal_auth.service.errors import MemberNotFoundError
from devportal_auth.storage.memory import MemoryMemberDirectory
from devportal_auth.storage.models import UserProfile


class ExplodingLookup:
    def __init__(self):
        self.calls = 0

    def lookup_member_id_by_email(self, email):
        self.calls += 1
        raise RuntimeError("directory unavailable")


class TestMemoryMemberDirectory:
    def test_case_insensitive_lookup(self):
        directory = MemoryMemberDirectory({"Jane@Example.com": "m-1"})
        assert directory.lookup_member_id_by_email("jane@example.COM") == "m-1"

    def test_add_member_generates_id(self):
        directory = MemoryMemberDirectory()
        member_id = directory.add_member("new@example.com")
        assert member_id
        assert directory.lookup_member_id_by_email("new@example.com") == member_id

    def test_missing_member(self):
        directory = MemoryMemberDirectory()
        with pytest.raises(MemberNotFoundError):
            directory.lookup_member_id_by_email("ghost@example.com")

    def test_remove_member(self):
        directory = MemoryMemberDirectory({"a@example.com": "m-1"})
        directory.remove_member("a@example.com")
        with pytest.raises(MemberNotFoundError):
            directory.lookup_member_id_by_email("a@example.com")


class TestMemberEnrichment:
    def test_known_member(self):
        enrichment = MemberEnrichment(MemoryMemberDirectory({"jdoe@example.com": "m-42"}))
        assert enrichment.find_member_id("jdoe@example.com") == "m-42"

    def test_unknown_member_is_none(self):
        enrichment = MemberEnrichment(MemoryMemberDirectory())
        assert enrichment.find_member_id("ghost@example.com") is None

    def test_empty_email_skips_lookup(self):
        lookup = ExplodingLookup()
        enrichment = MemberEnrichment(lookup)
        assert enrichment.find_member_id("") is None
        assert lookup.calls == 0

    def test_lookup_failure_is_swallowed(self):
        lookup = ExplodingLookup()
        enrichment = MemberEnrichment(lookup)
        assert enrichment.find_member_id("jdoe@example.com") is None
        assert lookup.calls == 1

    def test_no_lookup_configured(self):
        assert MemberEnrichment().find_member_id("jdoe@example.com") is None

    def test_enrich_sets_member_id(self):
        enrichment = MemberEnrichment(MemoryMemberDirectory({"jdoe@example.com": "m-42"}))
        profile = enrichment.enrich(UserProfile(id=1, username="jdoe", email="jdoe@example.com"))
        assert profile.member_id == "m-42"
        assert profile.to_dict()["memberId"] == "m-42"

    def test_enrich_without_match_leaves_none(self):
        enrichment = MemberEnrichment(MemoryMemberDirectory())
        profile = enrichment.enrich(UserProfile(id=1, username="jdoe", email="jdoe@example.com"))
        assert profile.member_id is None
        assert "memberId" not in profile.to_dict()
