"""PostgreSQL query builders, batching, client and statistics for the crawler."""