"""
Unit tests for coordinator components.

Tests:
- Job configuration
- Scope registry
- Model store and federated averaging
- API endpoints and mesh relay
"""

import os
import tempfile

import pytest
import torch
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from communication.serialization import serialize_tensors, deserialize_tensors
from coordinator import server
from coordinator.model_store import ModelStore
from coordinator.registry import ScopeRegistry, CREATOR, PARTICIPANT
from coordinator.server import app
from coordinator.training_config import FLJobConfig, JobConfigManager
from core.model import Model, create_mlp_model
from worker.plans import encode_argument


class TestJobConfig:
    """Test federated job configuration."""

    def test_defaults_are_valid(self):
        assert FLJobConfig().validate() == []

    def test_validation_errors(self):
        config = FLJobConfig(layer_sizes=[4], protocol="gossip", batch_size=0, max_workers=0)
        errors = config.validate()

        assert len(errors) == 4
        assert any("protocol" in e for e in errors)

    def test_client_config_overrides(self):
        config = FLJobConfig(batch_size=32)
        config.set_worker_override("w1", "batch_size", 8)

        assert config.client_config("w1")['batch_size'] == 8
        assert config.client_config("w2")['batch_size'] == 32
        assert set(config.client_config()) == {'batch_size', 'lr', 'max_epochs', 'max_updates'}

    def test_json_file(self):
        config = FLJobConfig(layer_sizes=[2, 2], max_workers=3)

        fd, path = tempfile.mkstemp(suffix='.json')
        os.close(fd)
        try:
            config.to_json_file(path)
            loaded = FLJobConfig.from_json_file(path)
        finally:
            os.unlink(path)

        assert loaded == config
        assert FLJobConfig.from_json(config.to_json()) == config

    def test_manager_update(self):
        manager = JobConfigManager()

        assert manager.update_config({"lr": 0.5}) == []
        assert manager.get_config().lr == 0.5

        assert manager.update_config({"lr": -1}) != []
        assert manager.get_config().lr == 0.5

        assert manager.update_config({"momentum": 0.9}) == ["Unknown fields: ['momentum']"]

    def test_manager_worker_batch_size(self):
        manager = JobConfigManager()
        manager.set_worker_batch_size("w1", 4)

        assert manager.get_client_config("w1")['batch_size'] == 4


class TestScopeRegistry:
    """Test scope bookkeeping."""

    @pytest.fixture
    def registry(self):
        return ScopeRegistry()

    def test_create_scope(self, registry):
        scope = registry.create_scope("mlp", num_workers=3, worker_id="c1", hostname="host")

        assert scope.creator_id == "c1"
        assert len(scope.members) == 3
        assert scope.joined_members() == ["c1"]
        assert list(scope.participants().values()).count(PARTICIPANT) == 2
        assert scope.participants()["c1"] == CREATOR

    def test_join_claims_free_slots(self, registry):
        scope = registry.create_scope("mlp", num_workers=2)

        member = registry.join_scope(scope.scope_id, hostname="b")
        assert member.role == PARTICIPANT
        assert member.joined

        assert registry.join_scope(scope.scope_id) is None

    def test_rejoin_by_worker_id(self, registry):
        scope = registry.create_scope("mlp", num_workers=2)
        member = registry.join_scope(scope.scope_id)

        again = registry.join_scope(scope.scope_id, worker_id=member.worker_id)

        assert again is member
        assert registry.join_scope(scope.scope_id, worker_id="ghost") is None
        assert registry.join_scope("missing") is None

    def test_leave_frees_slot(self, registry):
        scope = registry.create_scope("mlp", num_workers=2)
        member = registry.join_scope(scope.scope_id)

        assert registry.leave_scope(scope.scope_id, member.worker_id) is True
        assert registry.leave_scope(scope.scope_id, member.worker_id) is False
        assert registry.join_scope(scope.scope_id) is member

    def test_counts(self, registry):
        registry.create_scope("mlp", num_workers=2)
        scope = registry.create_scope("mlp", num_workers=2)
        registry.join_scope(scope.scope_id)

        assert registry.get_scope_count() == {'scopes': 2, 'joined_workers': 3}
        assert len(registry.get_all_scopes()) == 2


class TestModelStore:
    """Test delta collection and averaging."""

    @pytest.fixture
    def store(self):
        store = ModelStore()
        store.register_model(Model.from_tensors("m", [torch.zeros(2), torch.ones(1)]))
        return store

    def test_waits_for_every_expected_worker(self, store):
        ack = store.submit_report("s", "a", "m", 0, [torch.ones(2), torch.zeros(1)], ["a", "b"])

        assert ack['aggregated'] is False
        assert ack['reports_received'] == 1
        assert ack['reports_expected'] == 2
        assert store.get_round_status("s", "m")['reported'] == ["a"]

    def test_fedavg(self, store):
        store.submit_report("s", "a", "m", 0, [torch.ones(2), torch.zeros(1)], ["a", "b"])
        ack = store.submit_report("s", "b", "m", 0, [torch.full((2,), 3.0), torch.ones(1)], ["a", "b"])

        model = store.get_model("m")
        assert ack['aggregated'] is True
        assert ack['model_version'] == 1
        assert model.version == 1
        assert torch.allclose(model.params[0], torch.full((2,), -2.0))
        assert torch.allclose(model.params[1], torch.full((1,), 0.5))
        assert store.get_round_status("s", "m")['reported'] == []
        assert store.aggregation_history[-1]['num_reports'] == 2

    def test_rereport_replaces(self, store):
        store.submit_report("s", "a", "m", 0, [torch.ones(2), torch.zeros(1)], ["a", "b"])
        store.submit_report("s", "a", "m", 0, [torch.full((2,), 5.0), torch.zeros(1)], ["a", "b"])
        store.submit_report("s", "b", "m", 0, [torch.full((2,), 5.0), torch.zeros(1)], ["a", "b"])

        assert torch.allclose(store.get_model("m").params[0], torch.full((2,), -5.0))

    def test_scopes_are_separate_rounds(self, store):
        store.submit_report("s1", "a", "m", 0, [torch.ones(2), torch.zeros(1)], ["a", "b"])
        ack = store.submit_report("s2", "b", "m", 0, [torch.ones(2), torch.zeros(1)], ["a", "b"])

        assert ack['aggregated'] is False

    def test_rejects_bad_reports(self, store):
        with pytest.raises(KeyError):
            store.submit_report("s", "a", "other", 0, [], ["a"])

        with pytest.raises(ValueError, match="Stale"):
            store.submit_report("s", "a", "m", 3, [torch.ones(2), torch.zeros(1)], ["a"])

        with pytest.raises(ValueError):
            store.submit_report("s", "a", "m", 0, [torch.ones(2)], ["a"])

        with pytest.raises(ValueError, match="shape"):
            store.submit_report("s", "a", "m", 0, [torch.ones(3), torch.zeros(1)], ["a"])

    def test_unknown_model_status(self, store):
        assert store.get_round_status("s", "missing") == {'model_id': "missing", 'known': False}


@pytest.fixture
def client():
    """Test client over fresh coordinator state."""
    server.initial_config = FLJobConfig(layer_sizes=[3, 2], max_workers=2)

    # Entering the client runs the lifespan and shares one event loop
    # between HTTP calls and relay sessions
    with TestClient(app) as test_client:
        yield test_client

    server.initial_config = None


def connect(client, **body):
    body.setdefault("model_id", "mlp")
    response = client.post("/sessions/connect", json=body)
    assert response.status_code == 200, response.text
    return response.json()


def make_scope(client):
    """Create a scope and fill its participant slot."""
    creator = connect(client, hostname="a")
    participant = connect(client, scope_id=creator["scope_id"], hostname="b")
    return creator, participant


def report(client, member, delta, version=0, model_id="mlp"):
    return client.post(
        f"/scopes/{member['scope_id']}/workers/{member['worker_id']}/report",
        json={"model_id": model_id, "version": version, "delta": serialize_tensors(delta)}
    )


class TestAPI:
    """Test coordinator REST endpoints."""

    def test_root_and_health(self, client):
        assert client.get("/").json()["service"] == "meshfed Coordinator"

        data = client.get("/health").json()
        assert data["status"] == "healthy"
        assert data["models"] == {"mlp": 0}
        assert data["scopes"] == {'scopes': 0, 'joined_workers': 0}

    def test_connect_creates_and_joins(self, client):
        creator, participant = make_scope(client)

        assert creator["role"] == "creator"
        assert participant["role"] == "participant"
        assert participant["scope_id"] == creator["scope_id"]

        scope = client.get(f"/scopes/{creator['scope_id']}").json()
        assert scope["creator_id"] == creator["worker_id"]
        assert scope["round"]["version"] == 0

    def test_connect_errors(self, client):
        creator, participant = make_scope(client)
        scope_id = creator["scope_id"]

        assert client.post("/sessions/connect", json={"model_id": "cnn"}).status_code == 404
        assert client.post("/sessions/connect", json={"model_id": "mlp", "scope_id": "nope"}).status_code == 404
        assert client.post("/sessions/connect", json={"model_id": "mlp", "scope_id": scope_id}).status_code == 409
        assert client.post(
            "/sessions/connect", json={"model_id": "mlp", "scope_id": scope_id, "worker_id": "ghost"}
        ).status_code == 404

        server.model_store.register_model(create_mlp_model("other", [2, 2]))
        assert client.post(
            "/sessions/connect", json={"model_id": "other", "scope_id": scope_id}
        ).status_code == 400

    def test_rejoin_with_worker_id(self, client):
        creator, participant = make_scope(client)

        again = connect(client, scope_id=creator["scope_id"], worker_id=participant["worker_id"])

        assert again == participant

    def test_assignment(self, client):
        creator, participant = make_scope(client)
        client.put(f"/training/config/worker/{participant['worker_id']}/batch_size", params={"batch_size": 4})

        data = client.get(
            f"/scopes/{creator['scope_id']}/workers/{participant['worker_id']}/assignment"
        ).json()

        assert data["protocol"] == "fedavg"
        assert data["plans"] == ["training_plan"]
        assert data["participants"][creator["worker_id"]] == "creator"
        assert data["job"]["model_id"] == "mlp"
        assert data["job"]["version"] == 0
        assert data["job"]["client_config"]["batch_size"] == 4

        missing = client.get(f"/scopes/{creator['scope_id']}/workers/ghost/assignment")
        assert missing.status_code == 404

    def test_get_model(self, client):
        model = Model.from_payload(client.get("/models/mlp").json())

        assert model.shapes == [torch.Size([3, 2]), torch.Size([2])]
        assert client.get("/models/cnn").status_code == 404

    def test_reports_aggregate(self, client):
        creator, participant = make_scope(client)
        before = Model.from_payload(client.get("/models/mlp").json())

        first = report(client, creator, [torch.ones(3, 2), torch.zeros(2)])
        assert first.status_code == 200
        assert first.json()["aggregated"] is False
        assert first.json()["reports_expected"] == 2

        second = report(client, participant, [torch.full((3, 2), 3.0), torch.ones(2)])
        assert second.json()["aggregated"] is True
        assert second.json()["model_version"] == 1

        after = Model.from_payload(client.get("/models/mlp").json())
        assert after.version == 1
        assert torch.allclose(after.params[0], before.params[0] - 2.0)
        assert torch.allclose(after.params[1], before.params[1] - 0.5)

        stale = report(client, creator, [torch.ones(3, 2), torch.zeros(2)], version=0)
        assert stale.status_code == 409

    def test_report_errors(self, client):
        creator, participant = make_scope(client)

        assert report(client, {"scope_id": creator["scope_id"], "worker_id": "ghost"}, []).status_code == 404
        assert report(client, creator, [torch.ones(3, 2), torch.zeros(2)], model_id="other").status_code == 400
        assert report(client, creator, [torch.ones(2, 2), torch.zeros(2)]).status_code == 409

        bad = client.post(
            f"/scopes/{creator['scope_id']}/workers/{creator['worker_id']}/report",
            json={"model_id": "mlp", "version": 0, "delta": [{"shape": [1], "dtype": "nope", "data": ""}]}
        )
        assert bad.status_code == 422

    def test_leave(self, client):
        creator, participant = make_scope(client)
        path = f"/scopes/{creator['scope_id']}/workers/{participant['worker_id']}"

        assert client.delete(path).status_code == 200
        assert client.delete(path).status_code == 404

        # Only the creator remains, so its report completes the round
        ack = report(client, creator, [torch.ones(3, 2), torch.zeros(2)]).json()
        assert ack["aggregated"] is True

    def test_plan_runtime(self, client):
        model = create_mlp_model("mlp", [3, 2], seed=0)
        args = [torch.randn(4, 3), torch.eye(2)[[0, 1, 0, 1]], 4, 0.1, *model.params]

        response = client.post(
            "/plans/training_plan/execute",
            json={"worker": {"worker_id": "w1"}, "args": [encode_argument(a) for a in args]}
        )

        assert response.status_code == 200
        outputs = deserialize_tensors(response.json()["outputs"])
        assert len(outputs) == 2 + len(model)
        assert outputs[2].shape == model.params[0].shape

    def test_plan_runtime_errors(self, client):
        assert client.post("/plans/missing/execute", json={"args": []}).status_code == 404
        assert client.post("/plans/training_plan/execute", json={"args": [{"value": 1}]}).status_code == 422

    def test_update_config_replaces_model(self, client):
        response = client.put("/training/config", json={"layer_sizes": [4, 8, 2]})

        assert response.status_code == 200
        assert response.json()["config"]["layer_sizes"] == [4, 8, 2]
        model = Model.from_payload(client.get("/models/mlp").json())
        assert model.shapes[0] == torch.Size([4, 8])

    def test_update_config_rejected(self, client):
        response = client.put("/training/config", json={"lr": 0})

        assert response.status_code == 400
        assert client.get("/training/config").json()["lr"] == 0.1

    def test_worker_batch_size_validation(self, client):
        response = client.put("/training/config/worker/w1/batch_size", params={"batch_size": 0})

        assert response.status_code == 400


class TestMeshRelay:
    """Test the WebSocket relay between scope members."""

    def test_relay(self, client):
        creator, participant = make_scope(client)
        scope_id = creator["scope_id"]
        a, b = creator["worker_id"], participant["worker_id"]

        with client.websocket_connect(f"/ws/scopes/{scope_id}/{a}") as ws_a:
            with client.websocket_connect(f"/ws/scopes/{scope_id}/{b}") as ws_b:
                assert ws_b.receive_json() == {"event": "peer_connected", "worker_id": a}
                assert ws_a.receive_json() == {"event": "peer_connected", "worker_id": b}

                ws_b.send_json({"event": "message", "payload": {"step": 1}})
                assert ws_a.receive_json() == {"event": "message", "from": b, "payload": {"step": 1}}

                ws_a.send_json({"event": "ping"})
                assert ws_a.receive_json() == {"event": "pong"}

                assert server.ws_manager.connected(scope_id) == sorted([a, b])

            assert ws_a.receive_json() == {"event": "peer_disconnected", "worker_id": b}

    def test_model_updated_broadcast(self, client):
        creator, participant = make_scope(client)

        with client.websocket_connect(f"/ws/scopes/{creator['scope_id']}/{creator['worker_id']}") as ws:
            report(client, creator, [torch.zeros(3, 2), torch.zeros(2)])
            report(client, participant, [torch.zeros(3, 2), torch.zeros(2)])

            assert ws.receive_json() == {"event": "model_updated", "model_id": "mlp", "version": 1}

    def test_unknown_member_rejected(self, client):
        creator, _ = make_scope(client)

        with pytest.raises(WebSocketDisconnect) as exc_info:
            with client.websocket_connect(f"/ws/scopes/{creator['scope_id']}/ghost"):
                pass

        assert exc_info.value.code == 4404
