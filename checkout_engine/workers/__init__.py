"""Background workers: reservation reclaim and payment event consumption."""
