"""Lock manager, quorum client, guarded execution and cron scheduling."""
