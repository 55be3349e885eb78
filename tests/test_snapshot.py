from improvescript.models import SnapshotNode
from improvescript.snapshot import diff_snapshots, identity_key, parse_snapshot, parse_snapshot_line


def test_parse_snapshot_reads_roles_names_states_and_text() -> None:
    nodes = parse_snapshot(
        "\n".join(
            [
                "- banner:",
                '  - heading "Shop" [level=1]',
                '- button "Pay" [disabled]',
                "- text: Total 12 items",
                "- status [hidden]: Saved",
                '- link "Docs" [ref=e12]',
            ]
        )
    )
    assert [node.role for node in nodes] == ["banner", "heading", "button", "text", "status", "link"]
    assert nodes[0].name is None and nodes[0].text is None
    assert nodes[1].name == "Shop" and nodes[1].level == 1
    assert nodes[2].enabled is False
    assert nodes[3].text == "Total 12 items"
    assert nodes[4].visible is False and nodes[4].text == "Saved"
    assert nodes[5].ref == "e12"


def test_unparseable_lines_are_skipped() -> None:
    nodes = parse_snapshot('garbage line\n- /url: https://example.com\n- "quoted only"\n- heading "Kept"')
    assert [(node.role, node.name) for node in nodes] == [("heading", "Kept")]
    assert parse_snapshot(None) == []
    assert parse_snapshot_line("   ") is None


def test_escaped_names_are_decoded() -> None:
    node = parse_snapshot_line('- button "Say \\"hi\\""')
    assert node is not None
    assert node.name == 'Say "hi"'


def test_identity_prefers_ref() -> None:
    assert identity_key(SnapshotNode(role="button", name="Save", ref="e3")) == "ref:e3"
    assert identity_key(SnapshotNode(role="button", name="  Save  ")) == "button|save"


def test_diff_reports_appeared_text_and_state_changes() -> None:
    before = parse_snapshot('- button "Pay" [disabled]\n- status "Cart": Empty\n- navigation "Main"')
    after = parse_snapshot('- button "Pay"\n- status "Cart": 2 items\n- navigation "Main"\n- dialog "Confirm"')
    diff = diff_snapshots(before, after)

    assert [node.name for node in diff.appeared] == ["Confirm"]
    assert [(change.before.text, change.after.text) for change in diff.text_changes] == [("Empty", "2 items")]
    assert [(change.after.name, change.changed) for change in diff.state_changes] == [("Pay", ("enabled",))]
    assert [node.name for node in diff.stable] == ["Main"]
    assert diff.has_changes


def test_zero_diff_has_only_stable_nodes() -> None:
    text = '- navigation "Main"\n- heading "Welcome" [level=1]'
    diff = diff_snapshots(parse_snapshot(text), parse_snapshot(text))
    assert not diff.has_changes
    assert [node.role for node in diff.stable] == ["navigation", "heading"]


def test_visibility_flip_counts_as_appeared() -> None:
    before = parse_snapshot('- alert "Saved" [hidden]')
    after = parse_snapshot('- alert "Saved"')
    diff = diff_snapshots(before, after)
    assert [node.name for node in diff.appeared] == ["Saved"]
    assert diff.disappeared == ()


def test_repeated_siblings_are_not_reported_as_edits() -> None:
    two_rows = parse_snapshot('- listitem "Row"\n- listitem "Row"')
    three_rows = parse_snapshot('- listitem "Row"\n- listitem "Row"\n- listitem "Row"')

    grown = diff_snapshots(two_rows, three_rows)
    assert len(grown.appeared) == 1
    assert grown.text_changes == () and grown.state_changes == () and grown.disappeared == ()
    assert len(grown.stable) == 2

    shrunk = diff_snapshots(three_rows, two_rows)
    assert len(shrunk.disappeared) == 1
    assert shrunk.appeared == () and shrunk.text_changes == ()


def test_removed_sibling_with_text_is_not_paired_with_a_survivor() -> None:
    before = parse_snapshot('- listitem "Row": Apples\n- listitem "Row": Pears')
    after = parse_snapshot('- listitem "Row": Pears')
    diff = diff_snapshots(before, after)
    assert [node.text for node in diff.disappeared] == ["Apples"]
    assert diff.text_changes == ()
    assert [node.text for node in diff.stable] == ["Pears"]
