"""
Unit tests for the CTY.DAT callsign database.
"""

import pytest


class TestPrefixTokens:
    """Test parsing of individual prefix aliases."""

    def test_plain_prefix(self):
        from kiwi_wspr.decoding.cty import parse_prefix_token
        pfx = parse_prefix_token("ve")
        assert pfx.prefix == "VE"
        assert pfx.is_exact is False
        assert pfx.cq_zone == 0

    def test_exact_with_overrides(self):
        from kiwi_wspr.decoding.cty import parse_prefix_token
        pfx = parse_prefix_token("=VE2XYZ(2)[4]<46.8/71.2>{NA}~4.0~")
        assert pfx.prefix == "VE2XYZ"
        assert pfx.is_exact is True
        assert pfx.cq_zone == 2
        assert pfx.itu_zone == 4
        assert pfx.continent == "NA"
        assert (pfx.latitude, pfx.longitude) == (46.8, 71.2)
        assert pfx.time_offset == 4.0

    def test_empty_token(self):
        from kiwi_wspr.decoding.cty import parse_prefix_token
        assert parse_prefix_token("  ") is None

    def test_entity_line(self):
        from kiwi_wspr.decoding.cty import parse_entity_line
        entity = parse_entity_line(
            "Sov Mil Order of Malta:   15:  28:  EU:   41.90:   -12.43:    -1.0:  *1A:"
        )
        assert entity.name == "Sov Mil Order of Malta"
        assert entity.cq_zone == 15
        assert entity.itu_zone == 28
        assert entity.primary_prefix == "1A"
        assert entity.is_waedc is True


class TestCtyDatabase:
    """Test loading and lookups against a small CTY.DAT sample."""

    def test_load_counts(self, cty):
        assert cty.entity_count == 3
        assert cty.prefix_count > 10

    def test_prefix_lookup(self, cty):
        info = cty.lookup("W1ABC")
        assert info.country == "United States"
        assert info.cq_zone == 5
        assert info.itu_zone == 8
        assert info.continent == "NA"
        assert info.time_offset_hours == 5.0

    def test_longest_prefix_wins(self, cty):
        assert cty.country("AA1XYZ") == "United States"
        assert cty.country("VE3ABC") == "Canada"
        assert cty.lookup("VE3ABC").itu_zone == 9

    def test_exact_match_overrides(self, cty):
        info = cty.lookup("W1AW")
        assert info.country == "United States"
        assert info.cq_zone == 4
        assert info.itu_zone == 7
        # Not overridden, so inherited from the entity
        assert info.continent == "NA"

        info = cty.lookup("VE2XYZ")
        assert (info.cq_zone, info.itu_zone) == (2, 4)
        assert (info.latitude, info.longitude) == (46.8, 71.2)
        assert info.time_offset_hours == 4.0

    def test_case_insensitive(self, cty):
        assert cty.lookup("w1abc") == cty.lookup("W1ABC")

    def test_unknown_callsign(self, cty):
        from kiwi_wspr.interfaces.spot import NO_CALLSIGN_INFO
        assert cty.lookup("ZZ9ZZZ") == NO_CALLSIGN_INFO
        assert cty.lookup("") == NO_CALLSIGN_INFO

    def test_lookup_is_deterministic(self, cty):
        assert cty.lookup("VE2XYZ") == cty.lookup("VE2XYZ")

    def test_missing_file_raises(self, tmp_path):
        from kiwi_wspr.decoding.cty import CtyDatabase
        with pytest.raises(FileNotFoundError):
            CtyDatabase.load(tmp_path / "missing.dat")


class TestEnrich:
    """Test spot enrichment."""

    def test_enrich_with_database(self, cty):
        from kiwi_wspr.decoding.cty import enrich
        from kiwi_wspr.decoding.spot_parser import parse_spot_line

        spot = parse_spot_line("251227 1000  1 -15  0.5  14.097100  W1ABC FN42 30")
        enriched = enrich(spot, cty)

        assert enriched.spot is spot
        assert enriched.info.country == "United States"

    def test_enrich_without_database(self):
        from kiwi_wspr.decoding.cty import enrich
        from kiwi_wspr.decoding.spot_parser import parse_spot_line
        from kiwi_wspr.interfaces.spot import NO_CALLSIGN_INFO

        spot = parse_spot_line("251227 1000  1 -15  0.5  14.097100  W1ABC FN42 30")
        assert enrich(spot, None).info == NO_CALLSIGN_INFO
