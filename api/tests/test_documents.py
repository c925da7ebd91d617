import base64

from sqlmodel import Session, select

from paysign.models import AuditEvent, Document, Field, Recipient, Signature
from conftest import ALICE, BOB, OWNER, make_pdf, payment_header

NDA_MARKUP = """
<h1>NDA</h1>
<p>Disclosing party: <sig-field type="signature" recipient="1"></sig-field></p>
<p>Receiving party: <sig-field type="signature" recipient="2"></sig-field></p>
<p>Effective date: <sig-field type="date" recipient="1" required="true"></sig-field></p>
"""

TWO_SIGNERS = [
    {"name": "Alice", "walletAddress": ALICE},
    {"name": "Bob", "email": "bob@example.com"},
]


def test_create_returns_links_preview_and_recipients(client, create_document, mock_storage):
    body = create_document(recipients=TWO_SIGNERS)
    assert body["success"] is True
    assert body["status"] == "draft"
    assert set(body["signingLinks"]) == {"recipient_1", "recipient_2"}
    assert all("/sign/" in link for link in body["signingLinks"].values())
    assert body["previewUrl"].endswith(f"/api/documents/{body['documentId']}/preview")
    assert [r["signingOrder"] for r in body["recipients"]] == [1, 2]
    assert f"documents/{body['documentId']}/working.pdf" in mock_storage.objects

    preview = client.get(f"/api/documents/{body['documentId']}/preview")
    assert preview.status_code == 200
    assert preview.content.startswith(b"%PDF")


def test_html_document_gets_parsed_fields(client, create_document, test_engine):
    body = create_document(recipients=TWO_SIGNERS, content=NDA_MARKUP)
    assert body["warnings"] == []
    with Session(test_engine) as session:
        fields = session.exec(select(Field).where(Field.document_id == body["documentId"])).all()
        doc = session.get(Document, body["documentId"])
    assert doc.format == "html"
    assert doc.source_markup == NDA_MARKUP
    assert sorted(f.field_type for f in fields) == ["date", "signature", "signature"]
    date_field = next(f for f in fields if f.field_type == "date")
    assert date_field.meta == {"required": True}
    assert date_field.recipient_id == body["recipients"][0]["id"]


def test_html_fields_for_missing_recipient_become_warnings(create_document):
    body = create_document(content=NDA_MARKUP)
    assert body["warnings"] == ["no recipient found for number 2"]


def test_create_validation_errors(client):
    pdf = base64.b64encode(make_pdf()).decode()
    cases = [
        {"title": "", "format": "pdf", "pdfBase64": pdf, "recipients": [{"name": "A", "walletAddress": ALICE}]},
        {"title": "T", "format": "doc", "pdfBase64": pdf, "recipients": [{"name": "A", "walletAddress": ALICE}]},
        {"title": "T", "format": "pdf", "recipients": [{"name": "A", "walletAddress": ALICE}]},
        {"title": "T", "format": "pdf", "pdfBase64": pdf, "recipients": []},
        {"title": "T", "format": "pdf", "pdfBase64": base64.b64encode(b"hello").decode(),
         "recipients": [{"name": "A", "walletAddress": ALICE}]},
    ]
    for body in cases:
        resp = client.post("/api/documents", json=body, headers=payment_header())
        assert resp.status_code == 400, body

    resp = client.post(
        "/api/documents",
        json={"title": "T", "format": "pdf", "pdfBase64": pdf,
              "recipients": [{"name": "A", "walletAddress": ALICE}, {"name": "B"}]},
        headers=payment_header(),
    )
    assert resp.status_code == 400
    assert resp.json()["error"].startswith("Recipient 2")


def test_get_masks_recipients(client, create_document):
    body = create_document(recipients=[{"name": "Bob", "walletAddress": BOB, "email": "bob@example.com"}])
    doc = client.get(f"/api/documents/{body['documentId']}").json()
    recipient = doc["recipients"][0]
    assert recipient["email"] == "b***@example.com"
    assert recipient["walletAddress"] == "0xb0b0...5678"
    assert "accessToken" not in recipient


def test_unknown_document_is_404(client):
    assert client.get("/api/documents/does-not-exist").status_code == 404


def test_add_fields_rejects_foreign_recipient_and_bad_type(client, create_document):
    first = create_document()
    second = create_document()
    doc_id = first["documentId"]
    foreign = second["recipients"][0]["id"]
    resp = client.put(f"/api/documents/{doc_id}/fields",
                      json={"fields": [{"recipientId": foreign, "fieldType": "signature"}]})
    assert resp.status_code == 400

    own = first["recipients"][0]["id"]
    resp = client.put(f"/api/documents/{doc_id}/fields",
                      json={"fields": [{"recipientId": own, "fieldType": "stamp"}]})
    assert resp.status_code == 400

    resp = client.put(f"/api/documents/{doc_id}/fields",
                      json={"fields": [{"recipientId": own, "fieldType": "text", "positionX": 140}]})
    assert resp.status_code == 400


def test_distribute_requires_fields_for_every_signer(client, create_document, test_engine):
    body = create_document(recipients=TWO_SIGNERS)
    doc_id = body["documentId"]
    alice = body["recipients"][0]["id"]
    client.put(f"/api/documents/{doc_id}/fields",
               json={"fields": [{"recipientId": alice, "fieldType": "signature"}]})

    resp = client.post(f"/api/documents/{doc_id}/distribute")
    assert resp.status_code == 400
    assert "Bob" in resp.json()["error"]
    with Session(test_engine) as session:
        assert session.get(Document, doc_id).status == "draft"


def test_draft_only_operations_after_distribution(client, pending_document):
    doc = pending_document()
    resp = client.put(f"/api/documents/{doc['id']}/fields",
                      json={"fields": [{"recipientId": doc["recipientIds"][0], "fieldType": "text"}]})
    assert resp.status_code == 400
    resp = client.put(f"/api/documents/{doc['id']}/recipients",
                      json={"recipients": [{"name": "Carol", "email": "carol@example.com"}]})
    assert resp.status_code == 400
    assert client.post(f"/api/documents/{doc['id']}/distribute").status_code == 400


def test_add_recipients_while_draft(client, create_document):
    body = create_document()
    resp = client.put(f"/api/documents/{body['documentId']}/recipients",
                      json={"recipients": [{"name": "Carol", "email": "carol@example.com"}]})
    assert resp.status_code == 200
    assert resp.json()["recipients"][0]["signingOrder"] == 2
    assert set(resp.json()["signingLinks"]) == {"recipient_1", "recipient_2"}


def test_cancel_rules(client, create_document, pending_document, test_engine):
    draft = create_document()
    resp = client.post(f"/api/documents/{draft['documentId']}/cancel", json={"walletAddress": OWNER})
    assert resp.status_code == 400

    doc = pending_document()
    resp = client.post(f"/api/documents/{doc['id']}/cancel", json={"walletAddress": BOB})
    assert resp.status_code == 403

    resp = client.post(f"/api/documents/{doc['id']}/cancel", json={"walletAddress": OWNER.upper().replace("0X", "0x")})
    assert resp.status_code == 200
    assert resp.json()["status"] == "cancelled"

    resp = client.post(f"/api/documents/{doc['id']}/cancel", json={"walletAddress": OWNER})
    assert resp.status_code == 400

    with Session(test_engine) as session:
        events = session.exec(select(AuditEvent).where(AuditEvent.document_id == doc["id"])).all()
    assert "document_cancelled" in [e.event_type for e in events]


def test_cancelled_document_rejects_signing_session(client, pending_document):
    doc = pending_document()
    client.post(f"/api/documents/{doc['id']}/cancel", json={"walletAddress": OWNER})
    resp = client.get(f"/api/sign/{doc['tokens'][0]}")
    assert resp.status_code == 400


def test_delete_pending_document_is_rejected(client, pending_document):
    doc = pending_document()
    resp = client.request("DELETE", f"/api/documents/{doc['id']}", json={"walletAddress": OWNER})
    assert resp.status_code == 400
    resp = client.request("DELETE", f"/api/documents/{doc['id']}", json={"walletAddress": ALICE})
    assert resp.status_code == 403


def test_delete_cancelled_document_cascades(client, pending_document, test_engine, mock_storage):
    doc = pending_document(field_types=("signature", "text"))
    token = doc["tokens"][0]
    text_field = doc["fields"][doc["recipientIds"][0]]["text"]
    resp = client.post(f"/api/sign/{token}/field/{text_field['id']}", json={"value": "ACME Ltd"})
    assert resp.status_code == 200
    client.post(f"/api/documents/{doc['id']}/cancel", json={"walletAddress": OWNER})

    resp = client.request("DELETE", f"/api/documents/{doc['id']}", json={"walletAddress": OWNER})
    assert resp.status_code == 200

    with Session(test_engine) as session:
        assert session.get(Document, doc["id"]) is None
        assert session.exec(select(Recipient).where(Recipient.document_id == doc["id"])).all() == []
        assert session.exec(select(Field).where(Field.document_id == doc["id"])).all() == []
        assert session.exec(select(Signature)).all() == []
        assert session.exec(select(AuditEvent).where(AuditEvent.document_id == doc["id"])).all() == []
        detached = session.exec(select(AuditEvent).where(AuditEvent.document_id == None)).all()  # noqa: E711
        assert detached
    assert not any(doc["id"] in key for key in mock_storage.objects)
    assert client.get(f"/api/documents/{doc['id']}").status_code == 404


def test_owner_listing_and_inbox(client, pending_document, create_document):
    pending = pending_document()
    create_document(title="Still a draft")

    owned = client.get(f"/api/documents/owner/{OWNER}").json()
    assert owned["count"] == 2
    assert {d["title"] for d in owned["documents"]} == {"Mutual NDA", "Still a draft"}

    inbox = client.get(f"/api/inbox/{ALICE.upper().replace('0X', '0x')}").json()
    assert [d["documentId"] for d in inbox["documents"]] == [pending["id"]]
    assert inbox["hasVerifiedIdentity"] is False

    assert client.get("/api/inbox/not-a-wallet").status_code == 400


def test_download_requires_completion(client, pending_document):
    doc = pending_document()
    assert client.get(f"/api/documents/{doc['id']}/download").status_code == 404


def test_health(client):
    resp = client.get("/api/health")
    assert resp.status_code == 200
    assert resp.json()["database"] is True
    assert resp.headers["X-Request-Id"]


def test_signing_link_labels_follow_creation_order(client, create_document):
    body = create_document(recipients=[
        {"name": "Alice", "walletAddress": ALICE, "signingOrder": 2},
        {"name": "Bob", "walletAddress": BOB, "signingOrder": 1},
    ])
    doc_id = body["documentId"]
    client.put(f"/api/documents/{doc_id}/fields", json={"fields": [
        {"recipientId": r["id"], "fieldType": "signature"} for r in body["recipients"]
    ]})
    distributed = client.post(f"/api/documents/{doc_id}/distribute").json()["signingLinks"]
    assert distributed == body["signingLinks"]

    first = distributed["recipient_1"].rsplit("/sign/", 1)[1]
    assert client.get(f"/api/sign/{first}").json()["recipient"]["name"] == "Alice"


def test_cancel_completed_conflicts(client, pending_document, test_engine):
    doc = pending_document()
    token = doc["tokens"][0]
    field = doc["fields"][doc["recipientIds"][0]]["signature"]
    client.post(f"/api/sign/{token}/field/{field['id']}", json={"typedSignature": "Alice"})
    assert client.post(f"/api/sign/{token}/complete").json()["documentCompleted"] is True

    resp = client.post(f"/api/documents/{doc['id']}/cancel", json={"walletAddress": OWNER})
    assert resp.status_code == 400
    with Session(test_engine) as session:
        assert session.get(Document, doc["id"]).status == "completed"


def test_delete_draft_cascades(client, create_document, test_engine, mock_storage):
    body = create_document(recipients=TWO_SIGNERS, content=NDA_MARKUP)
    doc_id = body["documentId"]
    with Session(test_engine) as session:
        assert len(session.exec(select(Field).where(Field.document_id == doc_id)).all()) == 3

    resp = client.request("DELETE", f"/api/documents/{doc_id}", json={"walletAddress": OWNER})
    assert resp.status_code == 200
    with Session(test_engine) as session:
        assert session.get(Document, doc_id) is None
        assert session.exec(select(Field).where(Field.document_id == doc_id)).all() == []
        assert session.exec(select(Recipient).where(Recipient.document_id == doc_id)).all() == []
    assert f"documents/{doc_id}/working.pdf" not in mock_storage.objects


def test_inbox_document_view(client, pending_document, test_engine):
    doc = pending_document(recipients=[
        {"name": "Alice", "walletAddress": ALICE},
        {"name": "Bob", "walletAddress": BOB},
    ])
    resp = client.get(f"/api/inbox/{ALICE}/{doc['id']}")
    assert resp.status_code == 200
    body = resp.json()
    assert body["recipient"]["name"] == "Alice"
    assert body["totalFields"] == 1
    assert body["signedFields"] == 0
    assert body["allFieldsSigned"] is False
    assert body["signingUrl"].endswith(f"/sign/{doc['tokens'][0]}")
    assert body["hasVerifiedIdentity"] is False

    stranger = "0x" + "9" * 64
    resp = client.get(f"/api/inbox/{stranger}/{doc['id']}")
    assert resp.status_code == 403
    assert resp.json()["walletAddress"] == stranger
    assert client.get(f"/api/inbox/{ALICE}/missing").status_code == 404

    with Session(test_engine) as session:
        viewed = session.exec(select(AuditEvent).where(AuditEvent.event_type == "viewed")).all()
    assert [e.actor_wallet for e in viewed] == [ALICE]


def test_missing_artifacts_are_404(client, pending_document, mock_storage):
    doc = pending_document()
    token = doc["tokens"][0]
    field = doc["fields"][doc["recipientIds"][0]]["signature"]
    client.post(f"/api/sign/{token}/field/{field['id']}", json={"typedSignature": "Alice"})
    assert client.post(f"/api/sign/{token}/complete").json()["documentCompleted"] is True

    mock_storage.objects.pop(f"documents/{doc['id']}/final.pdf")
    mock_storage.objects.pop(f"documents/{doc['id']}/working.pdf")
    resp = client.get(f"/api/documents/{doc['id']}/download")
    assert resp.status_code == 404
    assert resp.json()["error"] == "Finalized document not available"
    resp = client.get(f"/api/documents/{doc['id']}/preview")
    assert resp.status_code == 404
    assert resp.json()["error"] == "Document preview not available"
