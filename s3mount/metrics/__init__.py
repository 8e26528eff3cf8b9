"""Counters, gauges and histograms recorded per thread and drained by a global sink."""