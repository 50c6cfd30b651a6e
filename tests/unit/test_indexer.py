"""
Tests for the combination indexer and template construction.
"""

import pytest

from slot_search.errors import ConfigurationError
from slot_search.indexer import CombinationIndexer, check_fixed_tokens, partition
from slot_search.types import Template
from slot_search.vocabulary import Vocabulary


class TestTemplate:
    """Test Template construction."""

    def test_parse_pattern(self):
        template = Template.parse("x ? y ?")
        assert template.length == 4
        assert template.free_positions == (2, 4)
        assert template.fixed_tokens == ("x", "y")
        assert str(template) == "x ? y ?"

    def test_parse_empty_pattern(self):
        with pytest.raises(ConfigurationError):
            Template.parse("   ")

    def test_from_known_splices_free_slots(self):
        """Free positions are 1-based within the full sequence."""
        template = Template.from_known(["w1", "w2", "w3"], [2, 4])
        assert str(template) == "w1 ? w2 ? w3"
        assert template.free_count == 2

    def test_from_known_trailing_positions(self):
        template = Template.from_known(["w1", "w2"], [3, 4])
        assert str(template) == "w1 w2 ? ?"

    def test_from_known_duplicate_positions(self):
        with pytest.raises(ConfigurationError, match="Duplicate"):
            Template.from_known(["w1", "w2"], [2, 2])

    def test_from_known_out_of_range(self):
        with pytest.raises(ConfigurationError, match="outside"):
            Template.from_known(["w1", "w2"], [5])


class TestEncode:
    """Test index -> candidate mapping."""

    def test_example_space(self, abc_vocabulary, xy_template):
        """[a, b, c] over [x, ?, y, ?] gives 9 candidates."""
        indexer = CombinationIndexer(abc_vocabulary, xy_template)
        assert indexer.search_space_size == 9
        assert indexer.encode(0) == ("x", "a", "y", "a")
        assert indexer.encode(4) == ("x", "b", "y", "b")
        assert indexer.encode(8) == ("x", "c", "y", "c")

    def test_most_significant_digit_first(self, abc_vocabulary, xy_template):
        """The leftmost free slot changes slowest."""
        indexer = CombinationIndexer(abc_vocabulary, xy_template)
        assert indexer.encode(1) == ("x", "a", "y", "b")
        assert indexer.encode(3) == ("x", "b", "y", "a")
        assert indexer.digits(5) == [1, 2]

    def test_coverage(self, abc_vocabulary, xy_template):
        """Every index yields a distinct candidate."""
        indexer = CombinationIndexer(abc_vocabulary, xy_template)
        candidates = {indexer.encode(i) for i in range(indexer.search_space_size)}
        assert len(candidates) == 9

    def test_fixed_slots_copied(self, abc_vocabulary, xy_template):
        indexer = CombinationIndexer(abc_vocabulary, xy_template)
        for i in range(9):
            candidate = indexer.encode(i)
            assert candidate[0] == "x"
            assert candidate[2] == "y"

    @pytest.mark.parametrize("index", [-1, 9, 10 ** 30])
    def test_out_of_range(self, abc_vocabulary, xy_template, index):
        indexer = CombinationIndexer(abc_vocabulary, xy_template)
        with pytest.raises(IndexError):
            indexer.encode(index)

    def test_beyond_64_bits(self):
        """2048 tokens and 8 free slots is 2**88 candidates."""
        vocabulary = Vocabulary(f"w{i}" for i in range(2048))
        template = Template.parse("? ? ? ? ? ? ? ?")
        indexer = CombinationIndexer(vocabulary, template)

        assert indexer.search_space_size == 2 ** 88
        assert indexer.encode(indexer.search_space_size - 1) == ("w2047",) * 8
        # 2**64 == 512 * 2048**5, so the third free slot holds w512
        assert indexer.encode(2 ** 64) == ("w0", "w0", "w512", "w0", "w0", "w0", "w0", "w0")

    def test_no_free_slots(self, abc_vocabulary):
        indexer = CombinationIndexer(abc_vocabulary, Template.parse("a b"))
        assert indexer.search_space_size == 1
        assert indexer.encode(0) == ("a", "b")

    def test_iter_range(self, abc_vocabulary, xy_template):
        indexer = CombinationIndexer(abc_vocabulary, xy_template)
        items = list(indexer.iter_range(2, 5))
        assert [i for i, _ in items] == [2, 3, 4]
        assert items[0][1] == indexer.encode(2)

    def test_iter_range_clamped(self, abc_vocabulary, xy_template):
        indexer = CombinationIndexer(abc_vocabulary, xy_template)
        assert [i for i, _ in indexer.iter_range(7, 100)] == [7, 8]


class TestDecode:
    """Test candidate -> index mapping."""

    def test_inverse(self, abc_vocabulary, xy_template):
        indexer = CombinationIndexer(abc_vocabulary, xy_template)
        for i in range(indexer.search_space_size):
            assert indexer.decode(indexer.encode(i)) == i

    def test_wrong_length(self, abc_vocabulary, xy_template):
        indexer = CombinationIndexer(abc_vocabulary, xy_template)
        with pytest.raises(ValueError, match="tokens"):
            indexer.decode(("x", "a", "y"))

    def test_fixed_mismatch(self, abc_vocabulary, xy_template):
        indexer = CombinationIndexer(abc_vocabulary, xy_template)
        with pytest.raises(ValueError, match="Fixed slot 1"):
            indexer.decode(("z", "a", "y", "a"))

    def test_unknown_token(self, abc_vocabulary, xy_template):
        indexer = CombinationIndexer(abc_vocabulary, xy_template)
        with pytest.raises(ValueError, match="not in vocabulary"):
            indexer.decode(("x", "q", "y", "a"))


class TestParameters:
    """Test search identity derived from the indexer."""

    def test_fields(self, abc_vocabulary, xy_template):
        params = CombinationIndexer(abc_vocabulary, xy_template).parameters()
        assert params.known_tokens == ("x", "y")
        assert params.free_positions == (2, 4)
        assert params.template_length == 4
        assert params.vocabulary_size == 3
        assert params.search_space_size == 9
        assert params.shard_start == 0
        assert params.shard_stop == 9
        assert not params.is_sharded

    def test_shard(self, abc_vocabulary, xy_template):
        params = CombinationIndexer(abc_vocabulary, xy_template).parameters().for_shard(3, 6)
        assert params.is_sharded
        assert (params.shard_start, params.shard_stop) == (3, 6)

    def test_dict_round_trip_keeps_big_ints(self):
        vocabulary = Vocabulary(f"w{i}" for i in range(2048))
        params = CombinationIndexer(vocabulary, Template.parse("? ? ? ? ? ? ? ?")).parameters()
        data = params.to_dict()
        assert data["search_space_size"] == str(2 ** 88)
        assert type(params).from_dict(data) == params

    def test_mismatches(self, abc_vocabulary, xy_template, fruit_vocabulary):
        ours = CombinationIndexer(abc_vocabulary, xy_template).parameters()
        theirs = CombinationIndexer(fruit_vocabulary, xy_template).parameters()
        diffs = ours.mismatches(theirs)
        assert any(d.startswith("vocabulary_size") for d in diffs)
        assert any(d.startswith("search_space_size") for d in diffs)
        assert ours.mismatches(ours) == []


class TestCheckFixedTokens:
    """Fixed tokens must belong to the vocabulary before a search starts."""

    def test_lists_offenders(self, abc_vocabulary, xy_template):
        with pytest.raises(ConfigurationError, match="x, y"):
            check_fixed_tokens(abc_vocabulary, xy_template)

    def test_accepts_known_tokens(self, fruit_vocabulary, fruit_template):
        check_fixed_tokens(fruit_vocabulary, fruit_template)


class TestPartition:
    """Test shard partitioning."""

    def test_even_split(self):
        assert partition(9, 3) == [(0, 3), (3, 6), (6, 9)]

    def test_remainder_goes_first(self):
        assert partition(10, 3) == [(0, 4), (4, 7), (7, 10)]

    def test_more_parts_than_items(self):
        assert partition(2, 4) == [(0, 1), (1, 2)]

    def test_empty_space(self):
        assert partition(0, 2) == []

    def test_invalid_parts(self):
        with pytest.raises(ValueError):
            partition(10, 0)

    def test_huge_space(self):
        total = 2048 ** 4
        ranges = partition(total, 7)
        assert ranges[0][0] == 0
        assert ranges[-1][1] == total
        for (_, stop), (start, _) in zip(ranges, ranges[1:]):
            assert stop == start
