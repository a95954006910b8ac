"""Encoder and decoder for the Redis Serialization Protocol."""