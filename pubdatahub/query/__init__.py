"""Query execution, caching, interactive sessions and result exports."""