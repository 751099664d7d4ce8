"""NSKeyedArchiver encoding and decoding with common Foundation, XCTest and instruments classes."""