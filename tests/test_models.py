import pytest
from pydantic import ValidationError

from support_widget.core.errors import MutationResult, NotFoundError
from support_widget.core.types import can_transition
from support_widget.storage.models import AuthSession, AuthUser, ProviderInput, ProviderPatch
from support_widget.sync.uploads import chat_image_path


@pytest.mark.parametrize(
    "current,target,allowed",
    [
        ("open", "claimed", True),
        ("open", "closed", True),
        ("claimed", "closed", True),
        ("claimed", "open", False),
        ("closed", "open", False),
        ("closed", "claimed", False),
        ("closed", "closed", True),
    ],
)
def test_status_only_moves_forward(current, target, allowed):
    assert can_transition(current, target) is allowed


def test_chat_image_path():
    assert chat_image_path("c1", "client", "café photo.png", now_ms=1700) == "conversations/c1/client/1700_caf__photo.png"
    assert chat_image_path("c1", "agent", "blob", now_ms=5) == "conversations/c1/agent/5_blob.jpg"


def test_provider_input_validation():
    provider = ProviderInput(name="  Shopee ", type="ecommerce", cashback_percent=5)

    assert provider.to_row()["name"] == "Shopee"
    assert provider.to_row()["type"] == "ecommerce"
    with pytest.raises(ValidationError):
        ProviderInput(name="x", type="bank")
    with pytest.raises(ValidationError):
        ProviderInput(name="x", logo_url="not a url")


def test_provider_patch_writes_only_set_fields():
    assert ProviderPatch(is_active=False).to_row() == {"is_active": False}


def test_auth_session_dict_round_trip():
    session = AuthSession(access_token="t", user=AuthUser(id="u", email="a@b.c", display_name="A"))

    assert AuthSession.from_dict(session.to_dict()) == session


def test_mutation_result_unwrap():
    assert MutationResult.success(3).unwrap() == 3
    failed = MutationResult.failure(NotFoundError("gone"))
    assert not failed.ok
    with pytest.raises(NotFoundError):
        failed.unwrap()
