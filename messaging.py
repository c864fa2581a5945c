"""Contact form messages and the shared chat log."""

from datetime import datetime, timezone

from lifecycle import ValidationError, clean_text
from storage import CHAT_MESSAGES_KEY, MESSAGES_KEY, Collection

REQUIRED_CONTACT_FIELDS = ('name', 'email', 'subject', 'message')
GUEST_SENDER = 'Guest'

contacts = Collection(MESSAGES_KEY)
chat_log = Collection(CHAT_MESSAGES_KEY)


def _now_iso():
    return datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z')


def submit_contact(fields):
    contact = {field: clean_text(fields.get(field)) for field in REQUIRED_CONTACT_FIELDS}
    missing = [field for field in REQUIRED_CONTACT_FIELDS if not contact[field]]
    if missing:
        raise ValidationError('Please complete all fields.', fields=missing)

    contact['createdAt'] = _now_iso()
    return contacts.append(contact)


def list_contacts():
    return contacts.load()


def delete_contact(index):
    records, revision = contacts.snapshot()
    if index < 0 or index >= len(records):
        return None
    removed = records.pop(index)
    contacts.save(records, revision=revision)
    return removed


def post_chat(text, sender=None):
    text = clean_text(text)
    if not text:
        raise ValidationError('Message text is required.', fields=['text'])

    return chat_log.append({
        'from': sender or GUEST_SENDER,
        'text': text,
        'timestamp': _now_iso(),
    })


def list_chat():
    return chat_log.load()
