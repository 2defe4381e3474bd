import policy
from conftest import auth
from database import MESSAGES


def send(client, sender, receiver, text="Is this still available?", **extra):
    body = {"receiverId": str(receiver["_id"]), "text": text, **extra}
    return client.post("/api/messages", json=body, headers=auth(sender))


def test_send_derives_conversation_id(client, make_user, seller, db):
    buyer = make_user()
    res = send(client, buyer, seller)
    assert res.status_code == 201
    expected = policy.conversation_id(buyer["_id"], seller["_id"])
    assert res.json()["conversationId"] == expected
    stored = db[MESSAGES].find_one()
    assert stored["conversationId"] == expected
    assert stored["read"] is False


def test_both_directions_share_a_conversation(client, make_user, seller):
    buyer = make_user()
    first = send(client, buyer, seller).json()["conversationId"]
    second = send(client, seller, buyer, text="Yes it is").json()["conversationId"]
    assert first == second


def test_mismatched_conversation_id_is_rejected(client, make_user, seller):
    buyer, other = make_user(), make_user()
    wrong = policy.conversation_id(other["_id"], seller["_id"])
    assert send(client, buyer, seller, conversationId=wrong).status_code == 400


def test_cannot_message_yourself(client, make_user):
    user = make_user()
    assert send(client, user, user).status_code == 400


def test_unknown_receiver(client, make_user):
    user = make_user()
    res = client.post("/api/messages", json={"receiverId": "not-an-id", "text": "hi"}, headers=auth(user))
    assert res.status_code == 400


def test_messages_are_rate_limited(client, make_user, seller):
    buyer = make_user()
    for i in range(10):
        assert send(client, buyer, seller, text=f"message {i}").status_code == 201
    res = send(client, buyer, seller)
    assert res.status_code == 429
    assert res.json()["retryAfter"] == 60


def test_conversation_thread_and_read_receipts(client, make_user, seller):
    buyer = make_user()
    conversation = send(client, buyer, seller, text="Hi").json()["conversationId"]
    send(client, buyer, seller, text="Still there?")

    assert client.get("/api/messages/unread/count", headers=auth(seller)).json()["count"] == 2
    assert client.get("/api/messages/unread/count", headers=auth(buyer)).json()["count"] == 0

    thread = client.get(f"/api/messages/{conversation}", headers=auth(seller)).json()["messages"]
    assert [m["text"] for m in thread] == ["Hi", "Still there?"]

    res = client.put(f"/api/messages/{conversation}/read", headers=auth(seller))
    assert res.json()["updated"] == 2
    assert client.get("/api/messages/unread/count", headers=auth(seller)).json()["count"] == 0


def test_outsiders_cannot_read_a_conversation(client, make_user, seller, admin):
    buyer, outsider = make_user(), make_user()
    conversation = send(client, buyer, seller).json()["conversationId"]
    assert client.get(f"/api/messages/{conversation}", headers=auth(outsider)).status_code == 403
    assert client.put(f"/api/messages/{conversation}/read", headers=auth(outsider)).status_code == 403
    assert client.get(f"/api/messages/{conversation}", headers=auth(admin)).status_code == 200


def test_conversation_summaries(client, make_user, seller):
    buyer, other = make_user(), make_user()
    send(client, buyer, seller, text="first")
    send(client, seller, buyer, text="reply")
    send(client, other, seller, text="hello")

    conversations = client.get("/api/messages", headers=auth(seller)).json()["conversations"]
    by_partner = {c["userId"]: c for c in conversations}
    assert set(by_partner) == {str(buyer["_id"]), str(other["_id"])}
    assert by_partner[str(other["_id"])]["unreadCount"] == 1
    assert by_partner[str(buyer["_id"])]["unreadCount"] == 1
