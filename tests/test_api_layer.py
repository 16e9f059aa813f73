"""HTTP-level tests for the FastAPI application."""

import asyncio

import pytest
from fastapi.testclient import TestClient

import api_layer
from collaborators import Collaborators, InMemoryGenerationEngine
from exceptions import ConfigurationError
from ingestion_orchestrator import InMemoryCatalogRepository, IngestionOrchestrator, PipelineContext
from models import Blueprint

URI = 'mem://datasheets/omron-g5v2.pdf'


@pytest.fixture
def orchestrator(settings, blob_store, ocr, relay_pages, relay_tables, make_store):
    blob_store.put(URI, '\f'.join(relay_pages))
    ocr.tables = relay_tables
    repo = InMemoryCatalogRepository(blueprints={
        'relay': Blueprint(family_slug='relay', specs_table='specs_relay'),
    })
    store = make_store(columns={'specs_relay': {'id': 'int4', 'brand_norm': 'text'}})
    ctx = asyncio.run(PipelineContext.create(
        blob_store, ocr, repo, store=store, settings=settings))
    return IngestionOrchestrator(ctx)


@pytest.fixture
def client(orchestrator):
    with TestClient(api_layer.app) as client:
        api_layer._state.orchestrator = orchestrator
        yield client


class TestIngestEndpoints:

    def test_ingest(self, client):
        resp = client.post('/ingest', json={'uri': URI, 'family_slug': 'relay'})
        assert resp.status_code == 200
        body = resp.json()
        assert body['brand'] == 'OMRON'
        assert body['strategy_source'] == 'inline'
        assert len(body['rows']) == 3

    def test_ingest_bad_uri(self, client):
        resp = client.post('/ingest', json={'uri': 'no-scheme.pdf'})
        assert resp.status_code == 400

    def test_ingest_missing_document_is_not_an_error(self, client):
        resp = client.post('/ingest', json={'uri': 'mem://datasheets/none.pdf'})
        assert resp.status_code == 200
        assert resp.json()['strategy_source'] == 'empty'

    def test_batch(self, client):
        resp = client.post('/ingest/batch', json={'documents': [
            {'uri': URI, 'family_slug': 'relay'},
            {'uri': 'mem://datasheets/none.pdf'},
        ]})
        assert resp.status_code == 200
        body = resp.json()
        assert body['processed'] == 2 and body['failed'] == 0
        assert len(body['results']) == 2

    def test_empty_batch_rejected(self, client):
        assert client.post('/ingest/batch', json={'documents': []}).status_code == 400


class TestReconcileEndpoint:

    PAYLOAD = {'table': 'specs_relay', 'blueprint_fields': [{'name': 'pn', 'type': 'text'}]}

    def test_reconcile(self, client):
        resp = client.post('/schema/reconcile', json=self.PAYLOAD)
        assert resp.status_code == 200
        body = resp.json()
        assert body['diff']['missing'] == [{'name': 'pn', 'want_type': 'text'}]
        assert body['executed']

    def test_unsafe_table(self, client):
        resp = client.post('/schema/reconcile', json={**self.PAYLOAD, 'table': 'specs; drop'})
        assert resp.status_code == 400

    def test_no_store_configured(self, client, orchestrator):
        orchestrator.ctx.store = None
        assert client.post('/schema/reconcile', json=self.PAYLOAD).status_code == 503

    def test_partial_failure_reported(self, client, orchestrator, make_store):
        orchestrator.ctx.store = make_store(
            columns={'specs_relay': {'id': 'int4', 'brand_norm': 'text'}}, fail_on='CREATE')
        resp = client.post('/schema/reconcile', json=self.PAYLOAD)
        assert resp.status_code == 500
        detail = resp.json()['detail']
        assert detail['executed'] == ['ALTER TABLE "public"."specs_relay" ADD COLUMN IF NOT EXISTS "pn" text;']
        assert detail['failed_statement'].startswith('CREATE')


class TestCollaborators:

    def test_default_factory(self, settings):
        collab = api_layer.load_collaborators(settings)
        assert isinstance(collab, Collaborators)
        assert collab.generator is None
        assert collab.ocr.processor_id == settings.ocr_processor_id

    @pytest.mark.parametrize('target', [
        'collaborators:missing_factory', 'no_such_module:build', 'no-colon',
    ])
    def test_unloadable_factory(self, settings, target):
        settings = settings.model_copy(update={'collaborators_factory': target})
        with pytest.raises(ConfigurationError, match='cannot load'):
            api_layer.load_collaborators(settings)

    def test_factory_must_return_collaborators(self, settings):
        settings = settings.model_copy(update={'collaborators_factory': 'builtins:repr'})
        with pytest.raises(ConfigurationError, match='expected Collaborators'):
            api_layer.load_collaborators(settings)

    def test_generator_reaches_context(self, settings, blob_store, ocr, monkeypatch):
        gen = InMemoryGenerationEngine([{'brand': 'OMRON'}], model='test-model')
        monkeypatch.setattr(
            api_layer, 'import_from_string',
            lambda target: lambda s: Collaborators(blob_store=blob_store, ocr=ocr, generator=gen))

        ctx = asyncio.run(api_layer._build_context(settings))

        assert ctx.generator is gen
        assert ctx.ocr is ocr
