import pytest
import yaml

from fakes import COMMIT, REPO_DIGEST, FakeRunner
from image_provenance.framework.config import DeployConfig
from image_provenance.framework.kubernetes import (
    KubectlError,
    apply_manifest,
    iter_images,
    render_deployment,
    verify_manifest,
    write_manifest,
)
from image_provenance.framework.references import ImageReference, MutableReferenceError

REPOSITORY = "registry.example.com/shop/orders-api"


def _deploy_cfg(**overrides):
    values = dict(
        name="orders-api",
        namespace="shop",
        replicas=2,
        container_name="app",
        port=8080,
        labels={"team": "payments"},
        output_path="/unused",
        apply=False,
        kubectl_binary=None,
        kube_context=None,
    )
    values.update(overrides)
    return DeployConfig(**values)


def test_render_deployment_pins_image_by_digest():
    image = ImageReference(REPOSITORY, tag="20261018-1", digest=REPO_DIGEST)

    manifest = render_deployment(image, deploy_cfg=_deploy_cfg(), revision=COMMIT, build_id="b1", tag="20261018-1")

    assert manifest["apiVersion"] == "apps/v1"
    assert manifest["kind"] == "Deployment"
    container = manifest["spec"]["template"]["spec"]["containers"][0]
    assert container["image"] == f"{REPOSITORY}@{REPO_DIGEST}"
    assert container["ports"] == [{"containerPort": 8080}]
    assert manifest["spec"]["replicas"] == 2
    assert manifest["spec"]["selector"]["matchLabels"] == {"app.kubernetes.io/name": "orders-api"}
    assert manifest["metadata"]["labels"]["team"] == "payments"
    annotations = manifest["spec"]["template"]["metadata"]["annotations"]
    assert annotations["image-provenance/revision"] == COMMIT
    assert annotations["image-provenance/tag"] == "20261018-1"


def test_render_deployment_refuses_tag_only_image():
    with pytest.raises(MutableReferenceError):
        render_deployment(
            ImageReference(REPOSITORY, tag="latest"), deploy_cfg=_deploy_cfg(), revision=COMMIT, build_id="b1"
        )


def test_replicas_override_and_no_port():
    image = ImageReference(REPOSITORY, digest=REPO_DIGEST)
    manifest = render_deployment(image, deploy_cfg=_deploy_cfg(port=None), revision=COMMIT, build_id="b1", replicas=0)
    container = manifest["spec"]["template"]["spec"]["containers"][0]
    assert "ports" not in container
    assert manifest["spec"]["replicas"] == 0
    assert "image-provenance/tag" not in manifest["metadata"]["annotations"]


def test_written_manifest_passes_verification(tmp_path):
    image = ImageReference(REPOSITORY, digest=REPO_DIGEST)
    manifest = render_deployment(image, deploy_cfg=_deploy_cfg(), revision=COMMIT, build_id="b1")

    path = write_manifest(str(tmp_path / "deploy" / "orders-api.yaml"), manifest)

    with open(path, "r", encoding="utf-8") as handle:
        assert yaml.safe_load(handle) == manifest
    assert verify_manifest(path) == []


def test_verify_flags_every_mutable_image(tmp_path):
    path = tmp_path / "mixed.yaml"
    path.write_text(
        "apiVersion: v1\n"
        "kind: Pod\n"
        "metadata: {name: debug}\n"
        "spec:\n"
        "  initContainers:\n"
        f"    - {{name: init, image: '{REPOSITORY}@{REPO_DIGEST}'}}\n"
        "  containers:\n"
        "    - {name: app, image: 'busybox:latest'}\n"
        "---\n"
        "apiVersion: batch/v1\n"
        "kind: CronJob\n"
        "metadata: {name: nightly}\n"
        "spec:\n"
        "  jobTemplate:\n"
        "    spec:\n"
        "      template:\n"
        "        spec:\n"
        "          containers:\n"
        "            - {name: job}\n",
        encoding="utf-8",
    )

    findings = verify_manifest(str(path))

    assert [f.severity for f in findings] == ["error", "error"]
    assert "Pod/debug container app uses mutable reference 'busybox:latest'" in findings[0].message
    assert "CronJob/nightly container job has no image" in findings[1].message


def test_iter_images_walks_lists():
    document = {
        "kind": "List",
        "items": [
            {"kind": "Deployment", "spec": {"template": {"spec": {"containers": [{"name": "a", "image": "x"}]}}}},
            {"kind": "Service", "spec": {"ports": []}},
        ],
    }
    assert list(iter_images(document)) == [("Deployment", "a", "x")]


def test_verify_invalid_yaml_raises(tmp_path):
    path = tmp_path / "broken.yaml"
    path.write_text("kind: [unterminated\n", encoding="utf-8")
    with pytest.raises(ValueError, match="Invalid YAML"):
        verify_manifest(str(path))


def test_apply_manifest_runs_kubectl(tmp_path):
    kubectl = tmp_path / "kubectl"
    kubectl.write_text("", encoding="utf-8")
    runner = FakeRunner().on("apply", stdout="deployment.apps/orders-api configured\n")

    output = apply_manifest(
        "/tmp/m.yaml", kubectl_binary=str(kubectl), context="prod", namespace="shop", runner=runner
    )

    assert output == "deployment.apps/orders-api configured"
    assert runner.calls == [[str(kubectl), "--context", "prod", "--namespace", "shop", "apply", "-f", "/tmp/m.yaml"]]


def test_apply_manifest_failure(tmp_path):
    kubectl = tmp_path / "kubectl"
    kubectl.write_text("", encoding="utf-8")
    runner = FakeRunner().on("apply", fail=True)

    with pytest.raises(KubectlError, match="kubectl apply failed"):
        apply_manifest("/tmp/m.yaml", kubectl_binary=str(kubectl), runner=runner)
