"""Game services: round state synchronization and answer submission.

The synchronizer is the only writer of question, round and outcome state;
the submission controller goes through it to mark and clear the in-flight
flag so every change reaches snapshot listeners in event order.
"""
