"""Tests for registry-constrained family classification."""

import asyncio

import pytest

from collaborators import GenerationEngine, InMemoryGenerationEngine
from family_classifier import FamilyClassifier, family_terms, score_families
from models import ResolutionSource

FAMILIES = ['capacitor', 'relay_power', 'relay_signal']

CORPUS = (
    "OMRON Corporation\nG5V-2 Signal Relay\n"
    "Low signal relays for telecom. Relay coil ratings follow."
)


class SlowGenerator(GenerationEngine):

    def __init__(self):
        super().__init__('slow')

    async def generate_json(self, system_instruction, user_payload,
                            max_output_tokens=512, temperature=0.2):
        await asyncio.sleep(5)
        return {}


def test_family_terms():
    assert family_terms('relay_signal') == ['relay', 'signal']
    assert family_terms('ic-op-amp') == ['amp']


def test_scores_rank_distinct_terms_first():
    scored = score_families(CORPUS, FAMILIES)
    assert [f for f, _ in scored] == ['relay_signal', 'relay_power']
    assert scored[0][1] == (2, 5)


class TestClassify:

    @pytest.mark.asyncio
    async def test_heuristic_without_generator(self, settings):
        choice = await FamilyClassifier(None, settings).classify(CORPUS, FAMILIES)
        assert choice.family_slug == 'relay_signal'
        assert choice.source == ResolutionSource.HEURISTIC

    @pytest.mark.asyncio
    async def test_generator_pick_mapped_to_registry(self, settings):
        gen = InMemoryGenerationEngine([{'family': ' Relay_Power '}])
        choice = await FamilyClassifier(gen, settings).classify(CORPUS, FAMILIES)

        assert choice.family_slug == 'relay_power'
        assert choice.source == ResolutionSource.AI
        assert gen.calls[0]['payload']['family_candidates'] == FAMILIES

    @pytest.mark.asyncio
    async def test_family_outside_registry_discarded(self, settings):
        warnings = []
        gen = InMemoryGenerationEngine(['```json\n{"family_slug": "connector"}\n```'])
        choice = await FamilyClassifier(gen, settings).classify(CORPUS, FAMILIES, warnings)

        assert choice.family_slug == ''
        assert choice.source == ResolutionSource.NONE
        assert any("'connector'" in w for w in warnings)

    @pytest.mark.asyncio
    async def test_timeout_falls_back_to_heuristic(self, settings):
        warnings = []
        settings = settings.model_copy(update={'remote_timeout_seconds': 0.2})
        choice = await FamilyClassifier(SlowGenerator(), settings).classify(
            CORPUS, FAMILIES, warnings)

        assert choice.family_slug == 'relay_signal'
        assert any('timed out' in w for w in warnings)

    @pytest.mark.asyncio
    async def test_nothing_to_choose_from(self, settings):
        classifier = FamilyClassifier(InMemoryGenerationEngine([{'family_slug': 'relay_power'}]), settings)
        assert (await classifier.classify(CORPUS, [])).family_slug == ''
        assert (await classifier.classify('', FAMILIES)).family_slug == ''
        assert classifier.generator.calls == []

    @pytest.mark.asyncio
    async def test_no_hits_no_family(self, settings):
        choice = await FamilyClassifier(None, settings).classify("Ceramic filter, 10 MHz", FAMILIES)
        assert choice.family_slug == ''
        assert choice.source == ResolutionSource.NONE
