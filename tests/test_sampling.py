"""
Sampling and id assignment tests.
"""

from noor_index.index.sampling import allocate_proportionally, plan_documents, sample_evenly
from noor_index.models import DocumentType

from conftest import make_records


class TestAllocateProportionally:
    """Tests for splitting the cap across corpora."""

    def test_cap_above_total_keeps_everything(self):
        """Verify a cap above the total keeps every document."""
        assert allocate_proportionally([10, 20], 100) == [10, 20]

    def test_proportional_split_sums_to_cap(self):
        """Verify the proportional split sums to the cap."""
        allocations = allocate_proportionally([512, 256, 256], 512)
        assert allocations == [256, 128, 128]
        assert sum(allocations) == 512

    def test_floor_remainder_goes_to_last_corpus(self):
        """Verify the rounding remainder goes to the last corpus."""
        # floor(1/3 * 2) == 0 for the first two; the last is capped at its size
        assert allocate_proportionally([1, 1, 1], 2) == [0, 0, 1]

    def test_empty_corpora(self):
        """Verify empty corpora produce an empty plan."""
        assert allocate_proportionally([0, 0], 10) == [0, 0]


class TestSampleEvenly:
    """Tests for fixed-stride sampling."""

    def test_fixed_stride_indices(self):
        """Verify fixed-stride selection picks the expected positions."""
        items = list(range(10))
        assert sample_evenly(items, 4) == [0, 2, 5, 7]

    def test_sample_larger_than_items_returns_all(self):
        """Verify a sample size above the item count returns all items."""
        assert sample_evenly([1, 2, 3], 5) == [1, 2, 3]

    def test_is_deterministic(self):
        """Verify planning is deterministic."""
        items = list(range(1000))
        assert sample_evenly(items, 37) == sample_evenly(items, 37)


class TestPlanDocuments:
    """Tests for the combined document plan."""

    def test_ids_are_contiguous_from_zero(self):
        """Verify ids are contiguous from zero."""
        corpora = [("quran", make_records("quran", 30)), ("hadith", make_records("hadith", 20))]
        documents = plan_documents(corpora, 10)
        assert [d.id for d in documents] == list(range(len(documents)))
        assert len(documents) == 10

    def test_documents_keep_corpus_order_and_type(self):
        """Verify documents keep corpus order and type."""
        corpora = [("quran", make_records("quran", 4)), ("hadith", make_records("hadith", 2))]
        documents = plan_documents(corpora, 100)
        assert [d.type for d in documents] == [DocumentType.QURAN] * 4 + [DocumentType.HADITH] * 2
        assert documents[0].source == "Quran 0"
        assert documents[4].fields == {"number": 0}
