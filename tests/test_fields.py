import itertools

import pytest

from esign.errors import InvalidStateError, ValidationError
from esign.fields import INVALID_POSITION, MISSING_FIELD, OVERLAP, REQUIRED_EMPTY, overlaps, validate
from esign.models import FieldType
from esign.schemas import FieldPlacement


def field(id, x=0.1, y=0.1, width=0.2, height=0.05, page=1, type=FieldType.SIGNATURE, signer_id=1, value="sig", required=True):
    return FieldPlacement(
        id=id, signer_id=signer_id, type=type, page=page, x=x, y=y, width=width, height=height, required=required, value=value
    )


def error_types(result):
    return [e.type for e in result.errors]


def test_field_past_right_edge_is_invalid_position():
    result = validate([field(1, x=0.9, width=0.2)], 1.0, 1.0)
    assert not result.valid
    assert error_types(result) == [INVALID_POSITION]
    assert result.errors[0].field_id == 1


def test_negative_coordinates_are_invalid_position():
    result = validate([field(1, x=-0.1)], 1.0, 1.0)
    assert INVALID_POSITION in error_types(result)


def test_field_filling_page_exactly_is_valid():
    assert validate([field(1, x=0.7, width=0.3, y=0.0, height=1.0)]).valid


def test_overlap_is_symmetric_and_page_scoped():
    boxes = [
        field(1, x=0.1, y=0.1),
        field(2, x=0.2, y=0.12),
        field(3, x=0.5, y=0.5),
        field(4, x=0.3, y=0.1),  # touches field 1 on its right edge
        field(5, x=0.1, y=0.1, page=2),
        field(6, x=0.0, y=0.0, width=1.0, height=1.0, page=3),
    ]
    for a, b in itertools.permutations(boxes, 2):
        assert overlaps(a, b) == overlaps(b, a)
        if a.page != b.page:
            assert not overlaps(a, b)
    assert overlaps(boxes[0], boxes[1])
    assert overlaps(boxes[0], boxes[3])
    assert not overlaps(boxes[0], boxes[2])


def test_each_overlapping_pair_reported_once():
    result = validate([field(1), field(2, x=0.15), field(3, x=0.6)])
    overlap_errors = [e for e in result.errors if e.type == OVERLAP]
    assert len(overlap_errors) == 1
    assert overlap_errors[0].field_id == 1
    assert "2" in overlap_errors[0].message


def test_same_coordinates_on_different_pages_do_not_overlap():
    assert validate([field(1, page=1), field(2, page=2)]).valid


@pytest.mark.parametrize(
    "type,value,ok",
    [
        (FieldType.SIGNATURE, "", False),
        (FieldType.SIGNATURE, "data:image/png;base64,AAA", True),
        (FieldType.INITIAL, None, False),
        (FieldType.TEXT, "   ", False),
        (FieldType.TEXT, " Lot 42 ", True),
        (FieldType.CHECKBOX, "true", True),
        (FieldType.CHECKBOX, "false", True),
        (FieldType.CHECKBOX, "yes", False),
        (FieldType.DATE, "", False),
        (FieldType.DATE, "2026-10-18", True),
        (FieldType.DATE, "18/10/2026", True),
        (FieldType.DATE, "next tuesday", False),
    ],
)
def test_required_field_values(type, value, ok):
    fields = [field(1, type=type, value=value)]
    if type != FieldType.SIGNATURE:
        fields.append(field(2, x=0.6, value="sig"))
    result = validate(fields)
    assert (REQUIRED_EMPTY not in error_types(result)) == ok


def test_optional_empty_field_is_fine():
    result = validate([field(1), field(2, x=0.6, type=FieldType.TEXT, value=None, required=False)])
    assert result.valid


def test_date_messages_distinguish_empty_and_unparseable():
    empty = validate([field(1), field(2, x=0.6, type=FieldType.DATE, value="")])
    bad = validate([field(1), field(2, x=0.6, type=FieldType.DATE, value="soon")])
    assert [e.message for e in empty.errors] == ["Date is required"]
    assert [e.message for e in bad.errors] == ["Invalid date format"]


def test_signer_without_signature_field_is_missing_field():
    result = validate([field(1, signer_id=1), field(2, x=0.6, signer_id=2, type=FieldType.TEXT, value="x")])
    missing = [e for e in result.errors if e.type == MISSING_FIELD]
    assert len(missing) == 1
    assert "Signer 2" in missing[0].message


def test_all_errors_are_accumulated():
    result = validate(
        [
            field(1, x=0.9, width=0.2, value=""),
            field(2, x=0.95, width=0.01, signer_id=2, type=FieldType.CHECKBOX, value="maybe"),
        ]
    )
    types = error_types(result)
    assert types.count(INVALID_POSITION) == 1
    assert OVERLAP in types
    assert types.count(REQUIRED_EMPTY) == 2
    assert MISSING_FIELD in types


def test_add_field_and_validate_stored_fields(services, owner, draft):
    env, alice, bob, carol = draft
    wf = services.workflow
    wf.add_field(env.id, field(None, signer_id=alice.id, type=FieldType.DATE, x=0.5, y=0.5, value="2026-10-18"), owner.id)
    stored = wf.fields(env.id)
    assert [f.type for f in stored] == [FieldType.SIGNATURE, FieldType.SIGNATURE, FieldType.DATE]
    result = wf.validate_fields(env.id)
    # placement-created signature fields have no value until signing
    assert [e.type for e in result.errors] == [REQUIRED_EMPTY, REQUIRED_EMPTY]


def test_add_field_rejects_out_of_range_geometry(services, owner, draft):
    env, alice, _, _ = draft
    with pytest.raises(ValidationError):
        services.workflow.add_field(env.id, field(None, signer_id=alice.id, x=1.2), owner.id)


def test_add_field_only_on_drafts(services, owner, sent):
    env, alice, _, _ = sent
    with pytest.raises(InvalidStateError):
        services.workflow.add_field(env.id, field(None, signer_id=alice.id, x=0.5, y=0.6), owner.id)
