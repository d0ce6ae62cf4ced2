"""
Exporter App - Queue-Driven Export Worker

Responsibilities:
- Consume "export ready" notifications from the exports stream
- Claim each delivery with a conditional-write lease (no duplicate processing)
- Keep the message invisible with a background heartbeat while the job runs
- Stream the export archive from the Export API and extract it entry by entry
- Upload entries to SFTP with bounded concurrency and periodic checkpoints
- Acknowledge on success or duplicate; leave failures for redelivery / DLQ

Output:
- {SFTP_REMOTE_BASE}/exports/{customerId}/{jobId}/{entry name}
- Lease record: {LEASE_KEY_PREFIX}msg#{message id} with status COMPLETED / FAILED
"""
